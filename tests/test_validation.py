import io

from uploader.transfer import UploadRequest
from uploader.validation import DenylistScanner, ValidationGate, ValidationVerdict


def _request(name: str, size: int | None = 10) -> UploadRequest:
    return UploadRequest(source=io.BytesIO(), logical_name=name, declared_size=size)


def test_clean_file_is_accepted() -> None:
    verdict = ValidationGate().validate(_request("report.pdf"))
    assert verdict.accepted is True
    assert verdict.reason is None


def test_denylisted_substring_is_rejected() -> None:
    verdict = ValidationGate().validate(_request("payload_virus.bin"))
    assert verdict.accepted is False
    assert "'virus'" in verdict.reason


def test_denylisted_extension_is_rejected_case_insensitively() -> None:
    verdict = ValidationGate().validate(_request("SETUP.EXE"))
    assert verdict.accepted is False
    assert "'.exe'" in verdict.reason


def test_extension_pattern_does_not_match_elsewhere_in_name() -> None:
    assert ValidationGate().validate(_request("exe_notes.txt")).accepted is True


def test_empty_name_is_rejected_before_anything_else() -> None:
    for name in ("", "   "):
        verdict = ValidationGate().validate(_request(name, size=0))
        assert verdict.accepted is False
        assert verdict.reason == "logical name is empty"


def test_unencodable_name_is_rejected() -> None:
    verdict = ValidationGate().validate(_request("bad\udcff.txt"))
    assert verdict.accepted is False
    assert verdict.reason == "logical name is not valid text"


def test_denylist_is_checked_before_size() -> None:
    verdict = ValidationGate().validate(_request("virus.txt", size=0))
    assert "denylist" in verdict.reason


def test_zero_size_is_rejected_and_unknown_size_is_allowed() -> None:
    gate = ValidationGate()
    assert gate.validate(_request("data.bin", size=0)).reason == "empty objects are not allowed"
    assert gate.validate(_request("data.bin", size=None)).accepted is True


def test_custom_denylist() -> None:
    scanner = DenylistScanner(["Malware", ".sh"])
    assert scanner.scan("virus.txt", 1).accepted is True
    assert scanner.scan("my-MALWARE.txt", 1).accepted is False
    assert scanner.scan("install.SH", 1).accepted is False


def test_scanner_can_be_substituted() -> None:
    seen: list[tuple[str, int | None]] = []

    class _ContentScanner:
        def scan(self, logical_name: str, size: int | None) -> ValidationVerdict:
            seen.append((logical_name, size))
            return ValidationVerdict.reject("signature match")

    verdict = ValidationGate(scanner=_ContentScanner()).validate(_request("report.pdf", size=42))

    assert verdict == ValidationVerdict(accepted=False, reason="signature match")
    assert seen == [("report.pdf", 42)]


def test_negative_size_is_rejected() -> None:
    verdict = ValidationGate().validate(_request("data.bin", size=-5))
    assert verdict.accepted is False
    assert verdict.reason == "declared size must not be negative"
