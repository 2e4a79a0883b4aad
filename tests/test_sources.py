import json
import socket
import threading

import numpy as np
import pytest

from eqkd_lab.coincidence import KEY_PAIRS, correlate
from eqkd_lab.polarization import WaveplateMisalignment
from eqkd_lab.sifting import KeySifter
from eqkd_lab.sources import (
    FileTimestampSource,
    LinkParams,
    NetworkRelaySource,
    SimulatedLink,
    StreamPair,
    encode_lines,
    parse_lines,
    read_timestamp_file,
    write_timestamp_file,
)
from eqkd_lab.stages import SimulatedRotationStage, move_stages
from eqkd_lab.timetags import TimestampStream


# --- simulated link ---

def test_link_params_validation():
    with pytest.raises(ValueError):
        LinkParams(pair_prob=1.5)
    with pytest.raises(ValueError):
        LinkParams(drift_coefficient=-1.0)
    with pytest.raises(ValueError):
        LinkParams(pair_prob=0.0, single_prob=0.0, dark_prob=0.0)


def test_simulated_link_channels_and_size():
    link = SimulatedLink(LinkParams(seed=1))
    alice, bob = StreamPair(link.alice, link.bob).capture(5000)
    assert set(np.unique(alice.channels).tolist()) <= {0, 1, 2, 3}
    assert set(np.unique(bob.channels).tolist()) <= {5, 6, 7, 8}
    assert 4000 < len(alice) < 6000
    assert 4000 < len(bob) < 6000


def test_simulated_link_is_reproducible_and_order_independent():
    first = SimulatedLink(LinkParams(seed=3))
    second = SimulatedLink(LinkParams(seed=3))
    a1 = first.alice.capture(2000)
    b1 = first.bob.capture(2000)
    b2 = second.bob.capture(2000)
    a2 = second.alice.capture(2000)
    assert np.array_equal(a1.times, a2.times)
    assert np.array_equal(b1.times, b2.times)
    assert np.array_equal(b1.channels, b2.channels)


def test_simulated_link_cycles_advance():
    link = SimulatedLink(LinkParams(seed=3))
    a1 = link.alice.capture(1000)
    a2 = link.alice.capture(1000)
    assert a2.first_time > a1.last_time


def test_simulated_link_error_rate_without_drift():
    params = LinkParams(base_error=0.05, seed=2)
    link = SimulatedLink(params)
    alice = link.alice.capture(40000)
    bob = link.bob.capture(40000)
    hist = correlate(
        alice, bob, KEY_PAIRS, window=1000, bin_width=100,
        offset=params.bob_clock_offset_ps + params.bob_delay_ps,
    )
    result = KeySifter().sift(alice, bob, hist)
    assert result.n_bits > 10000
    assert result.cycle_qber == pytest.approx(0.05, abs=0.02)


def test_simulated_link_follows_polarization():
    stages = [SimulatedRotationStage() for _ in range(3)]
    model = WaveplateMisalignment(stages, optimum=(0.0, 0.0, 0.0), base_error=0.01)
    link = SimulatedLink(LinkParams(seed=0), polarization=model)
    link.alice.capture(500)
    assert link.last_error_probability == pytest.approx(0.01)
    link.bob.capture(500)
    move_stages(stages, [20.0, 20.0, 20.0])
    link.alice.capture(500)
    assert link.last_error_probability > 0.1
    assert link.error_probability() == link.last_error_probability


def test_channel_delays_applied():
    plain = SimulatedLink(LinkParams(seed=5))
    delayed = SimulatedLink(LinkParams(seed=5), alice_delays={0: 1000, 1: 1000, 2: 1000, 3: 1000})
    a = plain.alice.capture(1000)
    d = delayed.alice.capture(1000)
    assert np.array_equal(a.times + 1000, d.times)


# --- files ---

def test_timestamp_file_roundtrip_in_packets(tmp_path):
    stream = TimestampStream(times=[10, 20, 30, 40, 50], channels=[0, 1, 2, 3, 0])
    path = write_timestamp_file(stream, str(tmp_path / "tags.csv"))
    source = FileTimestampSource(str(path))
    first = source.capture(3)
    second = source.capture(3)
    third = source.capture(3)
    assert first.times.tolist() == [10, 20, 30]
    assert second.times.tolist() == [40, 50]
    assert third.is_empty
    assert source.remaining == 0


def test_read_json_timestamps_sorts(tmp_path):
    path = tmp_path / "tags.json"
    path.write_text(json.dumps({"tags": [{"time_ps": 30, "channel": 5}, {"time_ps": 10, "channel": 6}]}))
    stream = read_timestamp_file(str(path))
    assert stream.times.tolist() == [10, 30]
    assert stream.channels.tolist() == [6, 5]


def test_read_json_rejects_bad_layout(tmp_path):
    path = tmp_path / "tags.json"
    path.write_text(json.dumps({"events": 3}))
    with pytest.raises(ValueError):
        read_timestamp_file(str(path))


def test_read_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_timestamp_file(str(tmp_path / "missing.csv"))


# --- network relay ---

def test_line_codec():
    stream = TimestampStream(times=[1, 2, 3], channels=[5, 6, 7])
    payload = encode_lines(stream)
    assert payload == b"1,5\n2,6\n3,7\n"
    parsed = parse_lines(payload.decode().splitlines())
    assert parsed.times.tolist() == [1, 2, 3]
    assert parse_lines(["", "  "]).is_empty
    with pytest.raises(ValueError):
        parse_lines(["1;5"])


def _serve_once(payload: bytes, hold: threading.Event = None):
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    port = server.getsockname()[1]

    def run():
        conn, _ = server.accept()
        with conn:
            conn.sendall(payload)
            if hold is not None:
                hold.wait(5.0)
        server.close()

    thread = threading.Thread(target=run, name="relay-test-server", daemon=True)
    thread.start()
    return port, thread


def test_network_relay_reads_packet():
    stream = TimestampStream(times=[100, 200, 300, 400], channels=[5, 6, 7, 8])
    port, thread = _serve_once(encode_lines(stream))
    packet = NetworkRelaySource("127.0.0.1", port, timeout_s=2.0).capture(3)
    thread.join(2.0)
    assert packet.times.tolist() == [100, 200, 300]
    assert packet.channels.tolist() == [5, 6, 7]


def test_network_relay_timeout_ends_packet():
    hold = threading.Event()
    stream = TimestampStream(times=[100, 200], channels=[5, 6])
    port, thread = _serve_once(encode_lines(stream), hold=hold)
    try:
        packet = NetworkRelaySource("127.0.0.1", port, timeout_s=0.3).capture(10)
    finally:
        hold.set()
        thread.join(2.0)
    assert packet.times.tolist() == [100, 200]
