import stat
import sys
import textwrap
from pathlib import Path

import pytest

_PRELUDE = """\
import json, os, sys, time
args = sys.argv[1:]
out = args[-1]
with open(os.path.join(os.path.dirname(__file__), "argv.json"), "w") as fh:
    json.dump(args, fh)
"""


@pytest.fixture
def fake_tool(tmp_path: Path):
    """Write an executable Python script standing in for ffmpeg.

    ``body`` runs after ``args``/``out`` are set; the argv it was called with
    is saved next to the script as ``argv.json``.
    """
    if sys.platform == "win32":
        pytest.skip("fake tool scripts need a POSIX shebang")

    tool_dir = tmp_path / "bin"
    tool_dir.mkdir(exist_ok=True)

    def make(body: str, name: str = "ffmpeg") -> str:
        path = tool_dir / name
        path.write_text(f"#!{sys.executable}\n" + _PRELUDE + textwrap.dedent(body), encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return make
