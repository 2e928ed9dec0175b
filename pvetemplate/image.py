from __future__ import annotations

import hashlib
from pathlib import Path

import requests
import structlog

log = structlog.get_logger(__name__)

DEFAULT_MIRROR_URL = "https://cloud-images.ubuntu.com"
DEFAULT_HTTP_TIMEOUT_SECONDS = 30
CHECKSUM_MANIFEST = "SHA256SUMS"
SUPPORTED_RELEASES = ("focal", "jammy", "noble")
SUPPORTED_ARCHES = ("amd64", "arm64")
_CHUNK_SIZE = 1024 * 1024


class ImageError(RuntimeError):
    """Raised when an image transfer or checksum verification fails."""


def image_name(release: str, arch: str = "amd64") -> str:
    return f"{release}-server-cloudimg-{arch}.img"


def parse_checksum_manifest(text: str) -> dict[str, str]:
    """Map filename to hex digest for lines like ``<hex> *<file>`` or ``<hex>  <file>``."""
    entries: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        if len(parts) != 2:
            continue
        digest, filename = parts
        entries[filename.strip().lstrip("*")] = digest.lower()
    return entries


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ImageMirror:
    def __init__(
        self,
        base_url: str = DEFAULT_MIRROR_URL,
        *,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

    def release_url(self, release: str) -> str:
        return f"{self.base_url}/{release}/current/"

    def image_url(self, release: str, arch: str = "amd64") -> str:
        return self.release_url(release) + image_name(release, arch)

    def reachable(self, release: str) -> bool:
        url = self.release_url(release)
        try:
            response = self.session.head(url, timeout=self.timeout_seconds, allow_redirects=True)
        except requests.RequestException as exc:
            log.debug("Mirror probe failed", url=url, error=str(exc))
            return False
        return response.status_code < 400

    def fetch_image(self, release: str, arch: str, dest_dir: Path) -> Path:
        url = self.image_url(release, arch)
        target = dest_dir / image_name(release, arch)
        log.info("Downloading cloud image", url=url)
        try:
            with self.session.get(url, stream=True, timeout=self.timeout_seconds) as response:
                response.raise_for_status()
                with target.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
        except requests.RequestException as exc:
            target.unlink(missing_ok=True)
            raise ImageError(f"Could not download {url}: {exc}") from exc
        except OSError as exc:
            target.unlink(missing_ok=True)
            raise ImageError(f"Could not write {target}: {exc}") from exc

        if target.stat().st_size == 0:
            target.unlink(missing_ok=True)
            raise ImageError(f"Downloaded image is empty: {url}")
        return target

    def fetch_manifest(self, release: str) -> dict[str, str]:
        url = self.release_url(release) + CHECKSUM_MANIFEST
        try:
            response = self.session.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ImageError(f"Could not download checksum manifest {url}: {exc}") from exc
        return parse_checksum_manifest(response.text)

    def download_verified(self, release: str, arch: str, dest_dir: Path) -> Path:
        """Fetch image and manifest, then verify; one retryable unit."""
        path = self.fetch_image(release, arch, dest_dir)
        try:
            manifest = self.fetch_manifest(release)
            expected = manifest.get(path.name)
            if not expected:
                raise ImageError(f"No checksum entry for {path.name} in {CHECKSUM_MANIFEST}")
            actual = sha256_file(path)
            if actual != expected:
                raise ImageError(
                    f"Checksum mismatch for {path.name}: expected {expected}, got {actual}"
                )
        except ImageError:
            path.unlink(missing_ok=True)
            raise
        log.info("Verified cloud image checksum", image=path.name)
        return path
