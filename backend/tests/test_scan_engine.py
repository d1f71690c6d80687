from __future__ import annotations

import clamd
import pytest

from upload_scanner.services.scan_engine import ClamAVScanner, ScanEngineError, ScanVerdict


class FakeClamd:
    response: dict | None = None
    error: Exception | None = None
    instances: list["FakeClamd"] = []

    def __init__(self, host, port, timeout):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.scanned: list[str] = []
        FakeClamd.instances.append(self)

    def multiscan(self, path):
        self.scanned.append(path)
        if FakeClamd.error is not None:
            raise FakeClamd.error
        return FakeClamd.response

    def ping(self):
        if FakeClamd.error is not None:
            raise FakeClamd.error
        return "PONG"


@pytest.fixture(autouse=True)
def fake_clamd(monkeypatch):
    FakeClamd.response = None
    FakeClamd.error = None
    FakeClamd.instances = []
    monkeypatch.setattr(clamd, "ClamdNetworkSocket", FakeClamd)
    return FakeClamd


@pytest.fixture()
def engine(tmp_path):
    return ClamAVScanner("clamav", 3310, timeout=30, local_root=tmp_path, engine_root="/scan")


def test_clean_file(engine, fake_clamd, tmp_path):
    fake_clamd.response = {"/scan/f1": ("OK", None)}

    result = engine.scan(tmp_path / "f1")

    assert result.verdict == ScanVerdict.clean
    assert not result.infected
    assert result.raw_report == "/scan/f1: OK"
    instance = fake_clamd.instances[0]
    assert (instance.host, instance.port, instance.timeout) == ("clamav", 3310, 30)
    assert instance.scanned == ["/scan/f1"]


def test_infected_file_keeps_signature_in_report(engine, fake_clamd, tmp_path):
    fake_clamd.response = {"/scan/f1": ("FOUND", "Eicar-Test-Signature")}

    result = engine.scan(tmp_path / "f1")

    assert result.infected
    assert result.raw_report == "/scan/f1: Eicar-Test-Signature FOUND"


def test_any_found_entry_makes_the_file_infected(engine, fake_clamd, tmp_path):
    fake_clamd.response = {
        "/scan/f1/a.dcm": ("OK", None),
        "/scan/f1/b.dcm": ("FOUND", "Win.Trojan.Agent"),
    }

    result = engine.scan(tmp_path / "f1")

    assert result.infected
    assert result.raw_report.splitlines() == [
        "/scan/f1/a.dcm: OK",
        "/scan/f1/b.dcm: Win.Trojan.Agent FOUND",
    ]


def test_engine_error_status_raises(engine, fake_clamd, tmp_path):
    fake_clamd.response = {"/scan/f1": ("ERROR", "lstat() failed: No such file or directory")}

    with pytest.raises(ScanEngineError, match="lstat"):
        engine.scan(tmp_path / "f1")


@pytest.mark.parametrize("error", [clamd.ConnectionError("refused"), OSError("timed out")])
def test_unreachable_engine_raises(engine, fake_clamd, tmp_path, error):
    fake_clamd.error = error

    with pytest.raises(ScanEngineError):
        engine.scan(tmp_path / "f1")


@pytest.mark.parametrize("response", [None, {}])
def test_empty_response_raises(engine, fake_clamd, tmp_path, response):
    fake_clamd.response = response

    with pytest.raises(ScanEngineError, match="no result"):
        engine.scan(tmp_path / "f1")


def test_engine_path_maps_scratch_directory_onto_engine_mount(engine, tmp_path):
    assert engine.engine_path(tmp_path / "f1") == "/scan/f1"
    assert engine.engine_path(tmp_path / "f1_extract" / "a.dcm") == "/scan/f1_extract/a.dcm"


def test_engine_path_rejects_files_outside_scratch_directory(engine, tmp_path):
    with pytest.raises(ValueError):
        engine.engine_path(tmp_path.parent / "elsewhere")


def test_ping(engine, fake_clamd):
    assert engine.ping() is True
    fake_clamd.error = clamd.ConnectionError("refused")
    assert engine.ping() is False
