import os
import stat
import sys
import textwrap

import pytest

FAKE_INKSCAPE = """\
import sys
from PIL import Image

actions = sys.argv[2].removeprefix("--actions=").split(";")
opts = {}
for action in actions:
    name, _, value = action.partition(":")
    if name == "export-do":
        size = int(opts["export-width"]) * SCALE, int(opts["export-height"]) * SCALE
        Image.new("RGBA", size).save(opts["export-filename"])
    else:
        opts[name] = value
"""

FAKE_XCURSORGEN = """\
import os
import sys

with open(sys.argv[1]) as f:
    rows = f.read().splitlines()
for row in rows:
    image = row.split()[3]
    if not os.path.isfile(image):
        print(f"{image}: no such file", file=sys.stderr)
        sys.exit(1)
with open(sys.argv[2], "w") as f:
    f.write("\\n".join(rows))
"""

FAKE_X2WINCUR = """\
import os
import shutil
import sys

args = sys.argv[1:]
out_dir = args[args.index("-o") + 1]
for path in args[:args.index("-o")]:
    shutil.copy(path, os.path.join(out_dir, os.path.basename(path) + ".cur"))
"""


def _write_tool(bin_dir, name, source):
    path = os.path.join(bin_dir, name)
    with open(path, "w") as f:
        f.write(f"#!{sys.executable}\n" + source)
    os.chmod(path, os.stat(path).st_mode | stat.S_IEXEC)


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    """Puts stand-ins for inkscape, xcursorgen and x2wincur first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def install(render_scale=1):
        _write_tool(bin_dir, "inkscape", f"SCALE = {render_scale}\n" + FAKE_INKSCAPE)
        _write_tool(bin_dir, "xcursorgen", FAKE_XCURSORGEN)
        _write_tool(bin_dir, "x2wincur", FAKE_X2WINCUR)
        return bin_dir

    monkeypatch.setenv("PATH", str(bin_dir) + os.pathsep + os.environ.get("PATH", ""))
    return install


@pytest.fixture
def src_tree(tmp_path):
    src = tmp_path / "src"
    (src / "config" / "static").mkdir(parents=True)
    (src / "config" / "animated").mkdir(parents=True)
    (src / "config" / "static" / "default.spec").write_text("4 4\n")
    (src / "config" / "static" / "pointer.spec").write_text("10.5 3\n")
    (src / "config" / "animated" / "wait.spec").write_text("12 12 3 100\n")

    for variant in ("dark", "light"):
        svg_dir = src / "svg" / variant
        svg_dir.mkdir(parents=True)
        for name in ("default", "pointer", "wait-00", "wait-01", "wait-02"):
            (svg_dir / f"{name}.svg").write_text('<svg xmlns="http://www.w3.org/2000/svg"/>')

    (src / "cursor-aliases").write_text(textwrap.dedent("""\
        # alias canonical
        arrow default
        left_ptr default
        hand2 pointer

        watch wait
        """))
    return src
