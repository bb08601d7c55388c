"""
DECKHAND File Operation Verifier

A write is reported successful only after the file is seen on disk with
at least the bytes that were written. Anything else raises
WriteVerificationFailed, which renders as marked failure text.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from deckhand.errors import DeckhandError
from deckhand.governance import VerifiedPath
from deckhand.workspace.host import HostBridge


class WriteVerificationFailed(DeckhandError):
    code = "WRITE_VERIFICATION_FAILED"

    def __init__(self, path: VerifiedPath, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path.relative}: {reason}")


@dataclass(frozen=True)
class WriteReceipt:
    path: VerifiedPath
    bytes_written: int
    size_on_disk: int
    appended: bool = False

    def describe(self) -> str:
        verb = "Appended" if self.appended else "Wrote"
        return f"{verb} {self.bytes_written} bytes to {self.path.relative} (verified, {self.size_on_disk} bytes on disk)"


class FileOperationVerifier:
    def __init__(self, host: HostBridge):
        self.host = host

    def write(self, path: VerifiedPath, content: str, append: bool = False) -> WriteReceipt:
        expected = len(content.encode("utf-8"))
        before = 0
        if append and self.host.exists(path):
            before = self.host.size(path)

        try:
            self.host.write_text(path, content, append=append)
        except OSError as e:
            raise WriteVerificationFailed(path, f"write failed: {e}") from e

        if not self.host.exists(path):
            logger.error(f"[VERIFY] {path.relative} missing after write")
            raise WriteVerificationFailed(path, "file was not found after write")

        size = self.host.size(path)
        if size < before + expected:
            logger.error(f"[VERIFY] {path.relative} has {size} bytes, expected {before + expected}")
            raise WriteVerificationFailed(
                path, f"file has {size} bytes after write, expected at least {before + expected}"
            )

        logger.debug(f"[VERIFY] {path.relative} ok ({size} bytes)")
        return WriteReceipt(path=path, bytes_written=expected, size_on_disk=size, appended=append)

    def ensure_dir(self, path: VerifiedPath) -> VerifiedPath:
        try:
            self.host.make_dirs(path)
        except OSError as e:
            raise WriteVerificationFailed(path, f"could not create directory: {e}") from e
        if not self.host.exists(path):
            raise WriteVerificationFailed(path, "directory was not found after mkdir")
        return path

    def read(self, path: VerifiedPath) -> str:
        return self.host.read_text(path)
