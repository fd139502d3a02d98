# toolchain.py
from __future__ import annotations

import hashlib
import logging
import os
import platform
import re
import shutil
import sys
import tempfile
import threading
import urllib.error
import urllib.request
import zipfile
from pathlib import Path
from typing import Dict, Optional, Protocol

from terraoperator.errors import ErrorKind, ExecutionError
from terraoperator.settings import RELEASES_URL, TOOLCHAIN_DIR

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
#   root/
#     <version>/
#       terraform            (terraform.exe on Windows)
#
# Entries are resolved once per process and never evicted. A version that
# is already on disk (from an earlier process) is reused without download.
# ---------------------------------------------------------------------

PRODUCT = "terraform"

# Exact semantic versions only ("1.6.0", "1.7.0-beta1"); no ranges.
VERSION_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.]+)?$")

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


class Installer(Protocol):
    def install(self, version: str, dest: Path) -> Path:
        ...


def binary_name() -> str:
    return f"{PRODUCT}.exe" if sys.platform.startswith("win") else PRODUCT


def _platform_pair() -> tuple[str, str]:
    if sys.platform.startswith("linux"):
        os_name = "linux"
    elif sys.platform == "darwin":
        os_name = "darwin"
    elif sys.platform.startswith("win"):
        os_name = "windows"
    elif sys.platform.startswith("freebsd"):
        os_name = "freebsd"
    else:
        os_name = sys.platform
    machine = platform.machine().lower()
    return os_name, _ARCH_ALIASES.get(machine, machine)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def validate_version(version: str) -> str:
    version = (version or "").strip()
    if not VERSION_RE.match(version):
        raise ExecutionError(
            ErrorKind.INSTALL_FAILURE,
            f"invalid version string: {version!r}",
            {"version": version},
        )
    return version


class HashicorpInstaller:
    """
    Installs an exact Terraform release from the HashiCorp releases site.

    Downloads the platform zip and the SHA256SUMS file, verifies the archive,
    and moves the extracted binary into place with an atomic rename.
    """

    def __init__(self, releases_url: str = RELEASES_URL):
        self.releases_url = releases_url.rstrip("/")

    def _download(self, url: str, dest: Path) -> None:
        logger.debug("Downloading %s", url)
        with urllib.request.urlopen(url) as response, dest.open("wb") as out:
            shutil.copyfileobj(response, out)

    def _expected_checksum(self, sums_file: Path, archive_name: str) -> str:
        for line in sums_file.read_text(encoding="utf-8").splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == archive_name:
                return parts[0]
        raise ExecutionError(
            ErrorKind.INSTALL_FAILURE,
            f"no checksum published for {archive_name}",
        )

    def install(self, version: str, dest: Path) -> Path:
        """
        Install `version` into `dest` and return the executable path.

        Raises:
            ExecutionError: with kind InstallFailure
        """
        version = validate_version(version)
        exe = dest / binary_name()
        if exe.is_file() and os.access(exe, os.X_OK):
            logger.info("Reusing terraform %s found at %s", version, exe)
            return exe

        os_name, arch = _platform_pair()
        archive_name = f"{PRODUCT}_{version}_{os_name}_{arch}.zip"
        base = f"{self.releases_url}/{PRODUCT}/{version}"

        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = Path(tempfile.mkdtemp(prefix=f".install-{version}-", dir=dest.parent))
        try:
            archive = tmp / archive_name
            sums = tmp / f"{PRODUCT}_{version}_SHA256SUMS"
            self._download(f"{base}/{archive_name}", archive)
            self._download(f"{base}/{sums.name}", sums)

            expected = self._expected_checksum(sums, archive_name)
            actual = _hash_file_contents(archive)
            if actual != expected:
                raise ExecutionError(
                    ErrorKind.INSTALL_FAILURE,
                    f"checksum mismatch for {archive_name}",
                    {"expected": expected, "actual": actual},
                )

            staged = tmp / "bin"
            staged.mkdir()
            with zipfile.ZipFile(archive) as zf:
                zf.extract(binary_name(), path=staged)
            (staged / binary_name()).chmod(0o755)

            if dest.exists():
                shutil.rmtree(dest)
            staged.replace(dest)
        except ExecutionError:
            raise
        except urllib.error.HTTPError as e:
            raise ExecutionError(
                ErrorKind.INSTALL_FAILURE,
                f"download failed: {e.code} {e.reason}",
                {"version": version, "url": e.url},
            )
        except urllib.error.URLError as e:
            raise ExecutionError(
                ErrorKind.INSTALL_FAILURE,
                f"network error: {e.reason}",
                {"version": version},
            )
        except (OSError, zipfile.BadZipFile, KeyError) as e:
            raise ExecutionError(
                ErrorKind.INSTALL_FAILURE,
                f"could not install terraform {version}: {e}",
                {"version": version},
            )
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

        logger.info("Installed terraform %s at %s", version, exe)
        return exe


class ToolchainCache:
    """
    Process-wide map of tool version -> executable path.

    Reads are lock-free once a version is cached. Installation is serialized
    per version key, so concurrent requests for the same uncached version
    trigger a single install, while distinct versions install in parallel.
    Failed installs are not cached.
    """

    def __init__(
        self,
        root: str | Path = TOOLCHAIN_DIR,
        installer: Optional[Installer] = None,
    ):
        self.root = Path(root).resolve()
        self.installer = installer or HashicorpInstaller()
        self._entries: Dict[str, str] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, version: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(version)
            if lock is None:
                lock = threading.Lock()
                self._locks[version] = lock
            return lock

    def cached(self, version: str) -> Optional[str]:
        return self._entries.get(version)

    def resolve(self, version: str) -> str:
        """
        Return the executable path for `version`, installing it on first use.

        Blocks until installation completes.

        Raises:
            ExecutionError: with kind InstallFailure
        """
        version = validate_version(version)
        path = self.cached(version)
        if path is not None:
            return path

        with self._lock_for(version):
            # another caller may have installed it while we waited
            path = self.cached(version)
            if path is not None:
                return path

            logger.info("Installing terraform %s", version)
            try:
                exe = self.installer.install(version, self.root / version)
            except ExecutionError:
                raise
            except Exception as e:
                raise ExecutionError(
                    ErrorKind.INSTALL_FAILURE,
                    f"could not install terraform {version}: {e}",
                    {"version": version},
                )

            path = str(exe)
            self._entries[version] = path
            return path
