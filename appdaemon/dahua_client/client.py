from __future__ import annotations

import ssl
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from dahua_client.parsing import parse_overlay_response
from dahua_client.types import CameraClientError, CameraConfig

_CONFIG_MANAGER_PATH = "/cgi-bin/configManager.cgi"


def _build_opener(config: CameraConfig) -> urllib.request.OpenerDirector:
    handlers: list[Any] = []
    if config.username:
        passwords = urllib.request.HTTPPasswordMgrWithDefaultRealm()
        passwords.add_password(None, config.base_url, config.username, config.password)
        # Digest is tried first (lower handler_order); most Dahua firmware only offers digest.
        handlers.append(urllib.request.HTTPDigestAuthHandler(passwords))
        handlers.append(urllib.request.HTTPBasicAuthHandler(passwords))
    if config.scheme == "https" and not config.verify_tls:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        handlers.append(urllib.request.HTTPSHandler(context=ctx))
    return urllib.request.build_opener(*handlers)


class DahuaCameraClient:
    """
    Minimal blocking client for the Dahua/Amcrest `configManager.cgi` overlay API.

    Every call is a plain GET; setConfig parameters ride in the query string.
    """

    def __init__(self, config: CameraConfig, opener: Optional[urllib.request.OpenerDirector] = None):
        self._config = config
        self._opener = opener or _build_opener(config)

    @property
    def config(self) -> CameraConfig:
        return self._config

    def _widget(self, overlay_id: str) -> str:
        return f"VideoWidget[{self._config.widget_index}].CustomTitle[{overlay_id}]"

    def _request(self, query: str) -> str:
        url = f"{self._config.base_url}{_CONFIG_MANAGER_PATH}?{query}"
        headers = {}
        if self._config.user_agent:
            headers["User-Agent"] = self._config.user_agent
        req = urllib.request.Request(url=url, method="GET", headers=headers)
        try:
            with self._opener.open(req, timeout=float(self._config.timeout_s)) as resp:
                status = getattr(resp, "status", 200)
                body = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as e:
            detail = ""
            try:
                detail = e.read().decode("utf-8", errors="replace")
            except Exception:
                pass
            raise CameraClientError(f"camera http error: {e.code} {e.reason}; {detail.strip()}") from e
        except Exception as e:
            raise CameraClientError(f"camera request failed: {e!r}") from e

        if status < 200 or status >= 300:
            raise CameraClientError(f"camera http error: {status}; {body.strip()[:200]}")
        return body

    def _set_config(self, params: list[tuple[str, str]]) -> None:
        query = "action=setConfig&" + "&".join(
            f"{key}={urllib.parse.quote(str(value), safe='')}" for key, value in params
        )
        body = self._request(query)
        # Firmware answers "OK" on success; anything else carries an error string.
        if body.strip() and body.strip().upper() != "OK":
            raise CameraClientError(f"camera rejected setConfig: {body.strip()[:200]!r}")

    def fetch_overlay_config(self) -> dict[str, str]:
        """Current camera-side custom titles as `{overlay_id: text}`."""
        body = self._request("action=getConfig&name=VideoWidget")
        return parse_overlay_response(body, widget_index=self._config.widget_index)

    def set_overlay_text(self, overlay_id: str, text: str) -> None:
        # Both requests are required for the camera to render the change.
        widget = self._widget(overlay_id)
        self._set_config([(f"{widget}.EncodeBlend", "true"), (f"{widget}.PreviewBlend", "true")])
        self._set_config([(f"{widget}.Text", text)])

    def disable_overlay_text(self, overlay_id: str) -> None:
        widget = self._widget(overlay_id)
        self._set_config([(f"{widget}.EncodeBlend", "false"), (f"{widget}.PreviewBlend", "false")])
