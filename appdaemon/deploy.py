#!/usr/bin/env python3
"""
Deploy the camera overlay apps from this repo to an AppDaemon config directory.

Copies appdaemon/apps/ (app modules + apps yaml) and the shared dahua_client/
library. Runtime state (apps/_state/, the overlay settings JSON) lives only on
the target and is never overwritten.

NEVER deploys appdaemon.yaml or secrets.yaml; camera passwords come from the
target's own secrets.yaml.

Usage:
    python appdaemon/deploy.py --target /conf
    python appdaemon/deploy.py --target /conf --dry-run
    DEPLOY_TARGET=/conf python appdaemon/deploy.py

Environment:
    DEPLOY_TARGET  Default AppDaemon config path (default: /conf)
"""

import argparse
import os
import shutil
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).resolve().parent
SOURCE = SCRIPT_DIR
DEFAULT_TARGET = os.environ.get("DEPLOY_TARGET", "/conf")

# NOTE: AppDaemon usually only puts `/conf/apps` on sys.path, so `dahua_client/`
# is deployed as `apps/dahua_client/` and `import dahua_client` works unchanged.
COPY_ITEMS = {
    "apps": Path("apps"),
    "dahua_client": Path("apps") / "dahua_client",
}

EXCLUDE_DIRS = {".venv", "__pycache__", ".git", ".cursor", "_state", ".pytest_cache"}
EXCLUDE_SUFFIXES = {".pyc", ".pyo", ".swp", ".bak", ".tmp"}
EXCLUDE_NAMES = {"appdaemon.yaml", "secrets.yaml"}


def should_exclude(path: Path) -> bool:
    if path.name in EXCLUDE_DIRS or path.name in EXCLUDE_NAMES:
        return True
    return path.suffix.lower() in EXCLUDE_SUFFIXES


def plan_copies(source: Path, target: Path) -> list[tuple[Path, Path]]:
    """(src_file, dst_file) pairs for everything that would be deployed."""
    pairs: list[tuple[Path, Path]] = []
    for item, dst_rel in COPY_ITEMS.items():
        src = source / item
        dst = target / dst_rel
        if not src.is_dir():
            continue
        for root, dirs, files in os.walk(src, topdown=True):
            root_path = Path(root)
            dirs[:] = sorted(d for d in dirs if not should_exclude(root_path / d))
            rel = root_path.relative_to(src)
            for f in sorted(files):
                if should_exclude(Path(f)):
                    continue
                pairs.append((root_path / f, dst / rel / f))
    return pairs


def deploy(source: Path, target: Path, dry_run: bool = False) -> int:
    source = Path(source)
    target = Path(target)
    if not source.is_dir():
        print(f"ERROR: Source not found: {source}", file=sys.stderr)
        return 1
    if not target.is_dir():
        print(f"ERROR: Target not found: {target}", file=sys.stderr)
        return 1

    pairs = plan_copies(source, target)
    for src_file, dst_file in pairs:
        if dry_run:
            print(f"[dry-run] {src_file} -> {dst_file}")
            continue
        dst_file.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src_file, dst_file)

    if not dry_run and pairs:
        print(f"Deployed {len(pairs)} file(s) to {target}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Deploy camera overlay apps to AppDaemon")
    parser.add_argument(
        "--target",
        "-t",
        default=DEFAULT_TARGET,
        help=f"AppDaemon config directory (default: {DEFAULT_TARGET} or DEPLOY_TARGET)",
    )
    parser.add_argument(
        "--dry-run",
        "-n",
        action="store_true",
        help="Show what would be copied without copying",
    )
    args = parser.parse_args()
    target = Path(args.target).resolve()
    if not target.exists():
        print(f"ERROR: Target directory does not exist: {target}", file=sys.stderr)
        return 1
    return deploy(SOURCE, target, dry_run=args.dry_run)


if __name__ == "__main__":
    sys.exit(main())
