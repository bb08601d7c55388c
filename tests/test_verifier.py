import pytest

from deckhand.errors import is_marked_failure
from deckhand.verifier import FileOperationVerifier, WriteVerificationFailed


def test_successful_write_returns_receipt(host, enforcer):
    verifier = FileOperationVerifier(host)
    path = enforcer.resolve("src/a.ts")

    receipt = verifier.write(path, "export const a = 1\n")

    assert receipt.bytes_written == len("export const a = 1\n")
    assert receipt.size_on_disk == receipt.bytes_written
    assert "verified" in receipt.describe()
    assert host.files["/proj/src/a.ts"] == "export const a = 1\n"


def test_write_reported_ok_but_missing_fails(host, enforcer):
    host.drop_writes = True
    verifier = FileOperationVerifier(host)

    with pytest.raises(WriteVerificationFailed) as exc:
        verifier.write(enforcer.resolve("src/a.ts"), "content")

    marked = exc.value.to_marked_text()
    assert marked.startswith("[ERROR] WRITE_VERIFICATION_FAILED")
    assert "src/a.ts" in marked
    assert is_marked_failure(marked)


def test_short_write_fails_size_check(host, enforcer):
    host.truncate_writes = True
    with pytest.raises(WriteVerificationFailed, match="expected at least"):
        FileOperationVerifier(host).write(enforcer.resolve("big.txt"), "x" * 100)


def test_append_checks_growth(host, enforcer):
    verifier = FileOperationVerifier(host)
    path = enforcer.resolve("log.txt")
    verifier.write(path, "one\n")

    receipt = verifier.write(path, "two\n", append=True)

    assert receipt.appended
    assert host.files["/proj/log.txt"] == "one\ntwo\n"


def test_os_error_during_write_is_a_verification_failure(host, enforcer):
    def boom(path, content, append=False):
        raise PermissionError("read-only file system")

    host.write_text = boom
    with pytest.raises(WriteVerificationFailed, match="read-only"):
        FileOperationVerifier(host).write(enforcer.resolve("a.txt"), "x")


def test_ensure_dir(host, enforcer):
    verifier = FileOperationVerifier(host)
    path = verifier.ensure_dir(enforcer.resolve("a/b/c"))
    assert host.exists(path)
