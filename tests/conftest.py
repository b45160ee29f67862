import json
import sys

import pytest
from fastapi.testclient import TestClient

import server
from ytdrop.settings import Settings

# Stand-in for yt-dlp. Behaviour is picked with FAKE_YTDLP_MODE:
#   ok      - progress on stderr, writes the file, prints its path on stdout
#   fail    - prints an ERROR line and exits 1
#   hang    - never finishes the download
#   silent  - writes the file but never prints its path
#   spawn   - starts a long-lived child sharing its pipes, then hangs
#   foreign - like ok, but first prints a path outside the download directory
# FAKE_YTDLP_MARKER, when set, gets one line appended per invocation.
FAKE_YTDLP = r'''
import json
import os
import subprocess
import sys
import time

args = sys.argv[1:]
mode = os.environ.get("FAKE_YTDLP_MODE", "ok")
marker = os.environ.get("FAKE_YTDLP_MARKER")
if marker:
    with open(marker, "a") as fh:
        fh.write(" ".join(args) + "\n")

if "--dump-json" in args:
    print(json.dumps({
        "id": "abc123",
        "title": "Fake Video",
        "requested_formats": [{"filesize": 1024}, {"filesize_approx": 1024}],
    }))
    sys.exit(0)

if mode == "spawn":
    subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    time.sleep(60)
    sys.exit(0)

if mode == "hang":
    time.sleep(60)
    sys.exit(0)

if mode == "fail":
    sys.stderr.write("[youtube] abc123: Downloading webpage\n")
    sys.stderr.write("ERROR: [youtube] abc123: Video unavailable\n")
    sys.exit(1)

template = args[args.index("-o") + 1]
path = template.replace("%(title).80s", "Fake_Video").replace("%(id)s", "abc123").replace("%(ext)s", "mp4")
lines = [
    "[youtube] abc123: Downloading webpage",
    "[download] Destination: " + path,
    "[download]   0.0% of 2.00KiB at  Unknown B/s ETA Unknown",
    "[download]  45.0% of 2.00KiB at 2.10MiB/s ETA 00:32",
    "[download]  45.0% of 2.00KiB at 2.10MiB/s ETA 00:32",
    "[download] 100% of 2.00KiB in 00:00:01 at 2.00KiB/s",
]
for line in lines:
    sys.stderr.write(line + "\n")
    sys.stderr.flush()
with open(path, "wb") as fh:
    fh.write(b"x" * 2048)
if mode == "foreign":
    sys.stdout.write(os.path.abspath(__file__) + "\n")
if mode != "silent":
    sys.stdout.write(path + "\n")
    sys.stdout.flush()
'''

WATCH_URL = "https://www.youtube.com/watch?v=abc123"


@pytest.fixture
def fake_ytdlp(tmp_path):
    script = tmp_path / "fake-yt-dlp"
    script.write_text(f"#!{sys.executable}\n{FAKE_YTDLP}")
    script.chmod(0o755)
    return script


@pytest.fixture
def settings(tmp_path, fake_ytdlp):
    return Settings(
        download_dir=tmp_path / "downloads",
        ytdlp_path=str(fake_ytdlp),
        job_timeout=20,
        probe_timeout=10,
    )


@pytest.fixture
def make_client(settings):
    clients = []

    def _make(**overrides):
        app = server.create_app(settings.model_copy(update=overrides))
        test_client = TestClient(app)
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _make
    for test_client in clients:
        test_client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def parse_sse(text):
    """Return ``[(event_type, data)]`` for every event frame in ``text``."""
    events = []
    for frame in text.split("\n\n"):
        event_type, data = None, None
        for line in frame.splitlines():
            if line.startswith("event: "):
                event_type = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        if event_type is not None:
            events.append((event_type, data))
    return events
