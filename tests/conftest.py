import subprocess

import pytest

from saveclip import config, extractor


class FakeYtDlp:
    """Stands in for ``subprocess.run`` and writes the file yt-dlp would produce."""

    def __init__(self, returncode=0, stderr="", payload=b"media-bytes", ext=None):
        self.returncode = returncode
        self.stderr = stderr
        self.payload = payload
        self.ext = ext
        self.calls = []

    def __call__(self, args, **kwargs):
        self.calls.append(args)
        if self.returncode == 0:
            template = args[args.index("-o") + 1]
            ext = self.ext or ("mp3" if "-x" in args else "mp4")
            with open(template.replace("%(ext)s", ext), "wb") as handle:
                handle.write(self.payload)
        return subprocess.CompletedProcess(args, self.returncode, "", self.stderr)


@pytest.fixture
def work_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "TEMP_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def fake_ytdlp(monkeypatch):
    def install(**kwargs):
        fake = FakeYtDlp(**kwargs)
        monkeypatch.setattr(extractor.subprocess, "run", fake)
        return fake

    return install
