import pytest

from ytdrop.progress import (
    Completed,
    Destination,
    OutputParser,
    Progress,
    RawLine,
    classify_line,
    size_to_bytes,
)


@pytest.mark.parametrize(
    "value,unit,expected",
    [
        (1, "B", 1),
        (1, "KiB", 1024),
        ("1.5", "MiB", 1572864),
        (2, "GiB", 2147483648),
        (1, "TiB", 1024 ** 4),
        ("120.50", "MiB", 126353408),
    ],
)
def test_size_to_bytes(value, unit, expected):
    assert size_to_bytes(value, unit) == expected


def test_progress_line_with_all_fields():
    event = classify_line("[download]  45.0% of 120.50MiB at 2.10MiB/s ETA 00:32")
    assert event == Progress(
        percent=45.0,
        downloaded_bytes=56859034,
        total_bytes=126353408,
        speed="2.10MiB/s",
        eta="00:32",
    )
    assert event.to_payload() == {
        "percent": 45.0,
        "downloadedBytes": 56859034,
        "totalBytes": 126353408,
        "speed": "2.10MiB/s",
        "eta": "00:32",
    }


def test_progress_line_tolerates_missing_speed_and_eta():
    event = classify_line("[download]  12.3% of ~ 10.00KiB at N/A ETA N/A")
    assert event.percent == 12.3
    assert event.total_bytes == 10240
    assert event.speed is None
    assert event.eta is None
    assert "speed" not in event.to_payload()


def test_progress_line_without_size():
    event = classify_line("[download]  7.5% at 1.00MiB/s ETA 01:02:03")
    assert event == Progress(percent=7.5, speed="1.00MiB/s", eta="01:02:03")


@pytest.mark.parametrize(
    "line",
    [
        "",
        "[download]",
        "[download]  abc% of 1MiB",
        "[download]  45.0",
        "[download]  450% of 1.00MiB",
        "[youtube] abc123: Downloading webpage",
        "WARNING: something odd",
    ],
)
def test_unrecognized_lines(line):
    assert classify_line(line) is None


@pytest.mark.parametrize(
    "line,path",
    [
        ("[download] Destination: /tmp/a.mp4", "/tmp/a.mp4"),
        ('[Merger] Merging formats into "/tmp/a b.mp4"', "/tmp/a b.mp4"),
        ("[ExtractAudio] Destination: /tmp/a.m4a", "/tmp/a.m4a"),
        ("[download] /tmp/a.mp4 has already been downloaded", "/tmp/a.mp4"),
    ],
)
def test_destination_lines(line, path):
    assert classify_line(line) == Destination(path)


def test_same_percent_twice_emits_once():
    parser = OutputParser()
    line = b"[download]  45.0% of 120.50MiB at 2.10MiB/s ETA 00:32\n"
    assert len(parser.feed("stderr", line)) == 1
    assert parser.feed("stderr", line) == []


def test_distinct_percents_emit_each():
    parser = OutputParser()
    data = b"".join(b"[download]  %d.0%% of 1.00MiB at 1.00MiB/s ETA 00:01\n" % pct for pct in (1, 2, 3, 3, 2))
    events = parser.feed("stderr", data)
    assert [event.percent for event in events] == [1.0, 2.0, 3.0, 2.0]


def test_partial_lines_are_buffered_until_complete():
    parser = OutputParser()
    line = b"[download]  45.0% of 120.50MiB at 2.10MiB/s ETA 00:32\n"
    events = []
    for i in range(0, len(line), 7):
        events.extend(parser.feed("stderr", line[i:i + 7]))
    assert len(events) == 1
    assert events[0].total_bytes == 126353408


def test_carriage_return_separated_progress():
    parser = OutputParser()
    events = parser.feed("stderr", b"[download]  10.0% of 1.00KiB\r[download]  20.0% of 1.00KiB\r")
    assert [event.percent for event in events] == [10.0, 20.0]


def test_completion_paths_come_from_stdout_only():
    parser = OutputParser()
    events = parser.feed("stdout", b"/srv/downloads/a.mp4\n/srv/downloads/b.mp4\nnot-a-path\n")
    assert events == [Completed("/srv/downloads/a.mp4"), Completed("/srv/downloads/b.mp4")]
    assert parser.feed("stderr", b"/srv/downloads/c.mp4\n") == []


def test_streams_are_buffered_separately():
    parser = OutputParser()
    assert parser.feed("stdout", b"/srv/down") == []
    assert parser.feed("stderr", b"[download]  50.0%") == []
    assert parser.feed("stdout", b"loads/a.mp4\n") == [Completed("/srv/downloads/a.mp4")]
    assert parser.flush() == [Progress(percent=50.0)]


def test_verbose_forwards_unmatched_lines():
    parser = OutputParser(verbose=True)
    events = parser.feed("stderr", b"[youtube] abc123: Downloading webpage\n\n")
    assert events == [RawLine("stderr", "[youtube] abc123: Downloading webpage")]


def test_invalid_utf8_does_not_crash():
    parser = OutputParser(verbose=True)
    events = parser.feed("stderr", b"\xff\xfe garbage\n")
    assert len(events) == 1
    assert isinstance(events[0], RawLine)
