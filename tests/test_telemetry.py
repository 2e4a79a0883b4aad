import math

import pytest

from eqkd_lab.telemetry import (
    LOCAL_HEADER,
    NETWORK_HEADER,
    KeyFile,
    StatsLog,
    load_key_stats,
)


def test_network_stats_format(tmp_path):
    log = StatsLog(str(tmp_path / "Stats.txt"), "network")
    line = log.write_network(1234.567, -42, 0.98765, timestamp="2026-01-01 00:00:00")
    assert line == "2026-01-01 00:00:00\t1234.57\t-42\t0.99"
    log.write_network(1.0, 0, 1.0, timestamp="2026-01-01 00:00:01")
    lines = (tmp_path / "Stats.txt").read_text().splitlines()
    assert lines[0] == NETWORK_HEADER
    assert len(lines) == 3


def test_local_stats_roundtrip(tmp_path):
    path = tmp_path / "KeyStats.txt"
    log = StatsLog(str(path), "local")
    log.write_local(250.0, 0.0312, timestamp="2026-01-01 00:00:00")
    log.write_local(260.5, float("nan"), timestamp="2026-01-01 00:00:05")
    assert path.read_text().splitlines()[0] == LOCAL_HEADER
    records = load_key_stats(str(path))
    assert len(records) == 2
    assert records[0].rate == 250.0
    assert records[0].qber == pytest.approx(0.0312)
    assert math.isnan(records[1].qber)


def test_wrong_format_writer_rejected(tmp_path):
    log = StatsLog(str(tmp_path / "s.txt"), "local")
    with pytest.raises(ValueError):
        log.write_network(1.0, 0, 1.0)
    with pytest.raises(ValueError):
        StatsLog(str(tmp_path / "s.txt"), "xml")


def test_load_key_stats_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_key_stats(str(tmp_path / "none.txt"))


def test_key_file_appends(tmp_path):
    key = KeyFile(str(tmp_path / "keys" / "AliceKey.txt"))
    assert key.read() == []
    assert key.append([0, 1, 1]) == 3
    assert key.append([]) == 0
    key.append([0])
    assert key.read() == [0, 1, 1, 0]
