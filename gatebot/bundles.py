"""Plugin bundle staging.

Operators drop ``<name>.zip`` archives into the plugin root. Before each
registry load every archive is validated and unpacked:

* the archive must contain exactly one top-level directory, and no
  entry may escape the plugin root; otherwise it is left untouched for
  inspection and InvalidBundleError is logged,
* an existing directory of the same name is renamed aside to
  ``<name>_<epoch-ms>`` rather than overwritten,
* the consumed archive is deleted after extraction.

Staging is blocking file work; callers on the event loop run it through
``asyncio.to_thread``.
"""

import re
import time
import zipfile
from pathlib import Path, PurePosixPath
from typing import List

import structlog

from .exceptions import InvalidBundleError

logger = structlog.get_logger("gatebot.plugins")

BUNDLE_SUFFIX = ".zip"

# Directories renamed aside by staging: <name>_<epoch-ms>
BACKUP_DIR_PATTERN = re.compile(r"^.+_\d{13}$")


def is_bundle_name(name: str) -> bool:
    return name.endswith(BUNDLE_SUFFIX)


def is_backup_dir_name(name: str) -> bool:
    return BACKUP_DIR_PATTERN.match(name) is not None


def bundle_root_dir(archive: zipfile.ZipFile, bundle: str) -> str:
    """Return the single top-level directory of ``archive``.

    Raises:
        InvalidBundleError: If file entries live under zero or several
            top-level directories, or any entry path is unsafe.
    """
    top_level = set()
    root_files = []
    for info in archive.infolist():
        parts = PurePosixPath(info.filename).parts
        if info.filename.startswith("/") or ".." in parts:
            raise InvalidBundleError("bundle entry escapes plugin root", bundle=bundle, entry=info.filename)
        if info.is_dir():
            continue
        if len(parts) > 1:
            top_level.add(parts[0])
        else:
            root_files.append(parts[0])
    if len(top_level) != 1 or root_files:
        raise InvalidBundleError(
            "bundle must contain a single top-level directory",
            bundle=bundle,
            top_level=sorted(top_level),
            root_files=root_files,
        )
    return top_level.pop()


def stage_bundle(bundle_path: Path) -> Path:
    """Unpack one archive into its parent directory.

    Returns:
        The directory the bundle was extracted to.

    Raises:
        InvalidBundleError: If the archive is corrupt or malformed.
    """
    plugins_dir = bundle_path.parent
    try:
        with zipfile.ZipFile(bundle_path) as archive:
            dir_name = bundle_root_dir(archive, bundle_path.name)
            target = plugins_dir / dir_name
            if target.exists():
                backup = plugins_dir / f"{dir_name}_{int(time.time() * 1000)}"
                logger.info("plugin_dir_backed_up", plugin=dir_name, backup=backup.name)
                target.rename(backup)
            logger.info("bundle_extracting", bundle=bundle_path.name, target=str(target))
            archive.extractall(plugins_dir)
    except zipfile.BadZipFile as e:
        raise InvalidBundleError(f"corrupt archive: {e}", bundle=bundle_path.name) from e

    bundle_path.unlink()
    logger.info("bundle_consumed", bundle=bundle_path.name)
    return target


def stage_bundles(plugins_dir: Path) -> List[Path]:
    """Stage every archive in ``plugins_dir``.

    Invalid bundles are logged and skipped; they never block the rest.
    Creates ``plugins_dir`` when it does not exist.

    Returns:
        Directories created from successfully staged bundles.
    """
    if not plugins_dir.is_dir():
        logger.info("plugin_dir_created", path=str(plugins_dir))
        plugins_dir.mkdir(parents=True, exist_ok=True)
        return []

    staged = []
    for bundle_path in sorted(plugins_dir.iterdir()):
        if not bundle_path.is_file() or not is_bundle_name(bundle_path.name):
            continue
        logger.info("bundle_found", bundle=bundle_path.name)
        try:
            staged.append(stage_bundle(bundle_path))
        except InvalidBundleError as e:
            logger.error("bundle_invalid", bundle=bundle_path.name, error=str(e))
        except OSError as e:
            logger.error(
                "bundle_extract_failed",
                bundle=bundle_path.name,
                error=str(e),
                error_type=type(e).__name__,
            )
    return staged
