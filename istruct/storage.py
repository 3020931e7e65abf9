"""qcow2 backing files for block devices."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from istruct.devices import DeviceId
from istruct.errors import BackendFailure

logger = logging.getLogger(__name__)


class BlockStore:
    """One qcow2 file per block device, named from the device id.

    Detach matches disks by looking for the device id inside the source
    path, so file names must contain the full id and nothing else may.
    """

    def __init__(self, block_dir: str | Path, qemu_img: str = "qemu-img"):
        self._dir = Path(block_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._dir = self._dir.resolve()
        self._qemu_img = qemu_img

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, device: DeviceId) -> Path:
        return self._dir / f"block_{device}.qcow2"

    def create(self, device: DeviceId, size_bytes: int) -> Path:
        """Create an empty qcow2 image of size_bytes.

        Raises:
            BackendFailure: if qemu-img cannot be run or exits non-zero.
        """
        path = self.path_for(device)
        cmd = [
            self._qemu_img, "create",
            "-f", "qcow2",
            str(path),
            str(size_bytes),
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise BackendFailure(f"Failed to run {self._qemu_img}: {e}") from e
        if result.returncode != 0:
            logger.error(f"Failed to create block image {path}: {result.stderr}")
            raise BackendFailure(
                f"qemu-img create failed for {path}: {result.stderr.strip()}"
            )

        logger.info(f"Created block image: {path} ({size_bytes} bytes)")
        return path

    def delete(self, device: DeviceId) -> None:
        path = self.path_for(device)
        if not path.exists():
            logger.warning(f"Block image already missing: {path}")
            return
        try:
            path.unlink()
        except OSError as e:
            raise BackendFailure(f"Failed to remove block image {path}: {e}") from e
        logger.info(f"Removed block image: {path}")
