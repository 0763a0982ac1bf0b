import pytest

import evaluate_rolling as ev
from rollers import CRC32Roller, make_factory

from stubs import SlowRoller


def test_list(capsys):
    assert ev.main(["--list"]) == 0
    out = capsys.readouterr().out.split()
    assert out == ["rollsum", "adler32", "bozo32", "buzhash32", "buzhash64", "crc32"]


def test_list_experimental(capsys):
    assert ev.main(["--list", "--experimental"]) == 0
    assert "rabinkarp64" in capsys.readouterr().out.split()


def test_report_shape(capsys):
    assert ev.main(["adler32", "--seed", "42", "--sample-size", "1024"]) == 0
    lines = capsys.readouterr().out.splitlines()

    assert lines[0] == "Using RNG seed 42"
    assert lines[1] == "adler32:"
    assert lines[2].startswith("  Elapsed time to roll/digest 1024 bytes of random data: ")
    assert lines[3] == "  Bits departing from 50% likelihood of being zero:"
    assert "  Bit-pair correlations departing from 50% likelihood:" in lines
    assert "  On 1-bit input change, digest bits departing from 50% likelihood of change:" in lines


def test_unknown_algorithm(capsys):
    assert ev.main(["doesnotexist", "--seed", "42", "--sample-size", "512"]) == 1
    captured = capsys.readouterr()
    assert "doesnotexist: error: unknown algorithm 'doesnotexist'" in captured.err
    assert captured.out.splitlines() == ["Using RNG seed 42"]


def test_unknown_algorithm_does_not_stop_the_rest(capsys):
    assert ev.main(["nope", "crc32", "--seed", "1", "--sample-size", "512"]) == 1
    captured = capsys.readouterr()
    assert "nope: error" in captured.err
    assert "crc32:" in captured.out.splitlines()


def test_random_source_failure(capsys, monkeypatch):
    def broken(seed, size=ev.SAMPLE_SIZE):
        raise ev.RandomSourceError("source exhausted")

    monkeypatch.setattr(ev, "sample_buffer", broken)
    assert ev.main(["adler32", "--seed", "3"]) == 2
    captured = capsys.readouterr()
    assert "source exhausted" in captured.err
    assert "adler32:" not in captured.out


def test_default_seed_is_echoed(capsys, monkeypatch):
    monkeypatch.setattr(ev.time, "time", lambda: 1234.5)
    assert ev.main(["crc32", "--sample-size", "256"]) == 0
    assert capsys.readouterr().out.startswith("Using RNG seed 1234\n")


@pytest.mark.parametrize("argv", [
    [],
    ["adler32", "--sample-size", "100"],
    ["adler32", "--timeout", "0"],
])
def test_usage_errors(argv):
    with pytest.raises(SystemExit) as info:
        ev.main(argv)
    assert info.value.code == 2


def test_timeout_exit_status(capsys, monkeypatch):
    monkeypatch.setattr(ev, "default_registry", lambda: ev.Registry({
        "slow": SlowRoller,
        "crc32": make_factory(CRC32Roller),
    }))
    argv = ["slow", "crc32", "--timeout", "0.01", "--seed", "1", "--sample-size", "300"]
    assert ev.main(argv) == 1

    captured = capsys.readouterr()
    assert "slow: error: timing phase of 'slow' exceeded 0.01s" in captured.err
    assert captured.err.count("exceeded") == 1
    assert "slow:" not in captured.out.splitlines()
    assert "crc32:" in captured.out.splitlines()


class RecordingDriver:
    def __init__(self):
        self.calls = []

    def __call__(self, names, registry, data, timeout=None, timeouts=None):
        self.calls.append((list(names), timeout, dict(timeouts or {})))
        return iter([])


@pytest.mark.parametrize("argv, names, timeout, timeouts", [
    (["--experimental", "rabinkarp64"], ["rabinkarp64"], None,
     {"rabinkarp64": ev.EXPERIMENTAL_TIMEOUT}),
    (["--experimental", "rabinkarp64", "--timeout", "5"], ["rabinkarp64"], 5.0,
     {"rabinkarp64": 5.0}),
    (["adler32"], ["adler32"], None, {}),
])
def test_experimental_watchdog(monkeypatch, argv, names, timeout, timeouts):
    driver = RecordingDriver()
    monkeypatch.setattr(ev, "evaluate_algorithms", driver)
    assert ev.main(argv + ["--seed", "1", "--sample-size", "256"]) == 0
    assert driver.calls == [(names, timeout, timeouts)]
