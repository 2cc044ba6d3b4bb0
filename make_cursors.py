"""
Capitaine cursors build script.

Renders the SVG sources of a variant to PNGs at several scale factors,
generates the xcursorgen configuration of every cursor, compiles the cursors
and wires up the aliases and the theme index.

Source tree layout
------------------
src/svg/<variant>/*.svg         cursor artwork, animated frames are named
                                <name>-<frame>.svg
src/config/static/*.spec        xhot yhot
src/config/animated/*.spec      xhot yhot frames ms-delay
src/cursor-aliases              one `alias canonical` pair per line

Hotspots in the spec files are given on the 24 unit design grid, they are
scaled together with the image size.

.in file format (see `man 1 xcursorgen`)
----------------------------------------
    size xhot yhot filename [ms-delay]

Rows are sorted by scale factor and then by frame, xcursorgen uses the first
image of each size it finds.

Density tiers
-------------
Tier     Scale factors
----------------------
lo       1 1.5
tv       1 1.5 2
hd       1 1.5 2 2.5
xhd      1 1.5 2 2.5 3
xxhd     1 1.5 2 2.5 3 4 5
xxxhd    1 1.5 2 2.5 3 4 5 6

See https://en.wikipedia.org/wiki/Pixel_density#Named_pixel_densities

Needs Inkscape and xcursorgen, and x2wincur (from win2xcur) for win32.
"""

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
import glob
import os
import os.path
import shutil
import sys
from typing import Iterable, Sequence

# Utility functions
def gray(s: str) -> str: return "\x1b[90m" + s + "\x1b[0m"
def red(s: str) -> str: return "\x1b[91m" + s + "\x1b[0m"
def yellow(s: str) -> str: return "\x1b[33m" + s + "\x1b[0m"

try:
    from PIL import Image
except ImportError as e:
    e.add_note(red("Package 'pillow' is required."))
    raise e


SVG_DIM = 24
SVG_DPI = 96
SIZES = tuple(Decimal(s) for s in ("1", "1.5", "2", "2.5", "3", "4", "5", "6"))
VARIANTS = ("dark", "light")
PLATFORMS = ("unix", "win32")
THEME_NAMES = {
    "dark": "Capitaine Cursors",
    "light": "Capitaine Cursors - White",
}

# Inkscape crashes if it is run too many times in parallel
MAX_RENDER_TASKS = 5


class DensityTier(Enum):
    LO = "lo"
    TV = "tv"
    HD = "hd"
    XHD = "xhd"
    XXHD = "xxhd"
    XXXHD = "xxxhd"


TIER_SIZE_COUNT = {
    DensityTier.LO: 2,
    DensityTier.TV: 3,
    DensityTier.HD: 4,
    DensityTier.XHD: 5,
    DensityTier.XXHD: 7,
    DensityTier.XXXHD: 8,
}


class BuildError(Exception):
    """Base class of the errors that abort a build."""
    pass


class InvalidTierError(BuildError):
    pass


class MalformedSpecError(BuildError):
    pass


class ExternalToolError(BuildError):
    """Raised when inkscape, xcursorgen or x2wincur fail."""
    pass


@dataclass(frozen=True)
class StaticSpec:
    name: str
    xhot: Decimal
    yhot: Decimal


@dataclass(frozen=True)
class AnimatedSpec:
    name: str
    xhot: Decimal
    yhot: Decimal
    frame_count: int
    frame_delay: int


CursorSpec = StaticSpec | AnimatedSpec


@dataclass(frozen=True)
class ConfigLine:
    size: int
    xhot: int
    yhot: int
    image_path: str
    delay: int | None = None

    def __str__(self) -> str:
        row = f"{self.size} {self.xhot} {self.yhot} {self.image_path}"
        if self.delay is not None:
            row += f" {self.delay}"
        return row


@dataclass(frozen=True)
class BuildConfig:
    src_dir: str
    dist_dir: str
    build_dir: str
    variant: str
    platform: str
    sizes: tuple[Decimal, ...]

    @property
    def specs_dir(self) -> str:
        return os.path.join(self.src_dir, "config")

    @property
    def aliases_file(self) -> str:
        return os.path.join(self.src_dir, "cursor-aliases")

    @property
    def svg_dir(self) -> str:
        return os.path.join(self.src_dir, "svg", self.variant)

    @property
    def render_dir(self) -> str:
        return os.path.join(self.build_dir, self.variant)

    @property
    def base_dir(self) -> str:
        return os.path.join(self.dist_dir, self.variant)

    @property
    def cursor_dir(self) -> str:
        return os.path.join(self.base_dir, "cursors")


def select_scale_factors(tier: DensityTier | str) -> tuple[Decimal, ...]:
    """Truncates `SIZES` to the scale factors rendered for `tier`."""
    try:
        tier = DensityTier(tier)
    except ValueError:
        raise InvalidTierError(f"Unrecognized DPI '{tier}'") from None
    return SIZES[:TIER_SIZE_COUNT[tier]]


def scale(value: Decimal | int, factor: Decimal) -> int:
    # Decimal parts are dropped, not rounded
    return int(Decimal(value) * factor)


def frame_suffix(index: int, frame_count: int) -> str:
    width = max(2, len(str(frame_count - 1)))
    return f"{index:0{width}d}"


def expand_spec(spec: CursorSpec, sizes: Iterable[Decimal]) -> list[ConfigLine]:
    lines = []
    for size in sizes:
        dim = scale(SVG_DIM, size)
        xhot = scale(spec.xhot, size)
        yhot = scale(spec.yhot, size)
        if isinstance(spec, AnimatedSpec):
            for i in range(spec.frame_count):
                image = f"x{size}/{spec.name}-{frame_suffix(i, spec.frame_count)}.png"
                lines.append(ConfigLine(dim, xhot, yhot, image, spec.frame_delay))
        else:
            lines.append(ConfigLine(dim, xhot, yhot, f"x{size}/{spec.name}.png"))
    return lines


def format_config(lines: Iterable[ConfigLine]) -> str:
    return "".join(f"{line}\n" for line in lines)


def _parse_hotspot(path: str, s: str) -> Decimal:
    try:
        value = Decimal(s)
    except InvalidOperation:
        raise MalformedSpecError(f"{path}: invalid hotspot value '{s}'") from None
    if not value.is_finite():
        raise MalformedSpecError(f"{path}: invalid hotspot value '{s}'")
    return value


def _parse_int(path: str, s: str, what: str, minimum: int) -> int:
    try:
        value = int(s)
    except ValueError:
        raise MalformedSpecError(f"{path}: invalid {what} '{s}'") from None
    if value < minimum:
        raise MalformedSpecError(f"{path}: {what} must be at least {minimum}")
    return value


def load_spec(path: str, animated: bool) -> CursorSpec:
    """
    Reads a spec file. Only the first line is used, it holds `xhot yhot` for
    static cursors and `xhot yhot frames ms-delay` for animated ones.
    """
    name = os.path.splitext(os.path.basename(path))[0]
    try:
        with open(path, encoding="utf-8") as f:
            fields = f.readline().split()
    except UnicodeDecodeError:
        raise MalformedSpecError(f"{path}: not a UTF-8 text file") from None

    expected = 4 if animated else 2
    if len(fields) != expected:
        raise MalformedSpecError(f"{path}: expected {expected} fields but found {len(fields)}")

    xhot = _parse_hotspot(path, fields[0])
    yhot = _parse_hotspot(path, fields[1])
    if not animated:
        return StaticSpec(name, xhot, yhot)

    frame_count = _parse_int(path, fields[2], "frame count", 1)
    frame_delay = _parse_int(path, fields[3], "frame delay", 0)
    return AnimatedSpec(name, xhot, yhot, frame_count, frame_delay)


def load_specs(specs_dir: str) -> list[CursorSpec]:
    """Loads the static specs and then the animated ones, by file name."""
    specs = []
    for kind in ("static", "animated"):
        for path in sorted(glob.glob(os.path.join(specs_dir, kind, "*.spec"))):
            specs.append(load_spec(path, animated=kind == "animated"))
    return specs


def write_configs(specs: Sequence[CursorSpec], sizes: Sequence[Decimal], build_dir: str) -> list[str]:
    """Writes `<name>.in` in `build_dir` for every spec, replacing old files."""
    os.makedirs(build_dir, exist_ok=True)
    in_files = []
    for spec in specs:
        target = os.path.join(build_dir, f"{spec.name}.in")
        lines = expand_spec(spec, sizes)
        for line in lines:
            print(gray(str(line)))
        with open(target, "w", encoding="utf-8") as f:
            f.write(format_config(lines))
        in_files.append(target)
    return in_files


def require_tools(platform: str) -> None:
    tools = ["inkscape", "xcursorgen"]
    if platform == "win32":
        tools.append("x2wincur")
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise ExternalToolError(f"{', '.join(missing)} required to build the cursors")


async def run_tool(*args: str, cwd: str | None = None) -> None:
    """Runs an external tool and raises `ExternalToolError` if it fails."""
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise ExternalToolError(f"Could not run {args[0]}: {e}") from e
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    if process.returncode != 0:
        stderr_str = stderr.decode().strip()
        stdout_str = stdout.decode().strip()
        if stderr_str:
            print(gray("stderr: " + stderr_str))
        if stdout_str:
            print(gray("stdout: " + stdout_str))
        raise ExternalToolError(f"{args[0]} exited with status {process.returncode}")


def check_render(path: str, dim: int) -> None:
    if not os.path.isfile(path):
        raise ExternalToolError(f"Generation of {path} failed")
    with Image.open(path) as image:
        if image.size != (dim, dim):
            raise ExternalToolError(
                f"{path} is {image.width}x{image.height}, expected {dim}x{dim}")


async def render_svg(svg: str, out_dir: str, sizes: Sequence[Decimal]) -> None:
    name = os.path.splitext(os.path.basename(svg))[0]

    actions = []
    out_files = []
    for size in sizes:
        dim = scale(SVG_DIM, size)
        out_file = os.path.join(out_dir, f"x{size}", f"{name}.png")
        actions.extend([
            f"export-filename:{out_file}",
            f"export-width:{dim}",
            f"export-height:{dim}",
            f"export-dpi:{scale(SVG_DPI, size)}",
            "export-area-page",
            "export-do"
        ])
        out_files.append((out_file, dim))

    print(f"Generating {', '.join(f for f, _ in out_files)}...")
    await run_tool("inkscape", svg, "--actions=" + ";".join(actions))

    for out_file, dim in out_files:
        check_render(out_file, dim)


async def render(config: BuildConfig) -> None:
    """Renders the SVGs of the variant to `<build>/<variant>/x<size>/`."""
    svgs = sorted(glob.glob(os.path.join(config.svg_dir, "*.svg")))
    if not svgs:
        raise ExternalToolError(f"No SVG sources found in {config.svg_dir}")

    for size in config.sizes:
        os.makedirs(os.path.join(config.render_dir, f"x{size}"), exist_ok=True)

    for i in range(0, len(svgs), MAX_RENDER_TASKS):
        batch = svgs[i:i + MAX_RENDER_TASKS]
        results = await asyncio.gather(
            *(render_svg(svg, config.render_dir, config.sizes) for svg in batch),
            return_exceptions=True
        )
        # The whole batch has exited before the first failure is raised
        for result in results:
            if isinstance(result, BaseException):
                raise result


async def compile_cursors(config: BuildConfig, in_files: Sequence[str]) -> list[str]:
    """
    Compiles every `.in` file with xcursorgen. The image paths of the `.in`
    files are relative to the render directory of the variant, so xcursorgen
    runs from there.

    win32 cursors are converted from the compiled X cursors by x2wincur.
    """
    if config.platform == "win32":
        out_dir = os.path.join(config.render_dir, "xcursors")
    else:
        out_dir = config.cursor_dir
    os.makedirs(out_dir, exist_ok=True)

    compiled = []
    for in_file in in_files:
        name = os.path.splitext(os.path.basename(in_file))[0]
        out_file = os.path.abspath(os.path.join(out_dir, name))
        print(f"Generating {out_file}...")
        await run_tool("xcursorgen", os.path.abspath(in_file), out_file, cwd=config.render_dir)
        compiled.append(out_file)

    if config.platform == "win32" and compiled:
        os.makedirs(config.cursor_dir, exist_ok=True)
        print(f"Converting cursors to {config.cursor_dir}...")
        await run_tool("x2wincur", *compiled, "-o", config.cursor_dir)

    return compiled


def read_aliases(path: str) -> list[tuple[str, str]]:
    """Reads `alias canonical` pairs, skipping blank lines and comments."""
    aliases = []
    try:
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                fields = line.split()
                if len(fields) != 2:
                    raise MalformedSpecError(f"{path}:{lineno}: expected 'alias canonical'")
                if os.sep in fields[0]:
                    raise MalformedSpecError(f"{path}:{lineno}: alias '{fields[0]}' is not a file name")
                aliases.append((fields[0], fields[1]))
    except UnicodeDecodeError:
        raise MalformedSpecError(f"{path}: not a UTF-8 text file") from None
    return aliases


def link_aliases(cursor_dir: str, aliases: Iterable[tuple[str, str]]) -> list[str]:
    """
    Links each alias to its cursor inside `cursor_dir`. Existing entries are
    never replaced, so the first alias of a name wins.
    """
    created = []
    for alias, target in aliases:
        if os.sep in alias:
            raise MalformedSpecError(f"alias '{alias}' is not a file name")
        link = os.path.join(cursor_dir, alias)
        if os.path.lexists(link):
            continue
        if not os.path.lexists(os.path.join(cursor_dir, target)):
            print(yellow(f"{alias}: target '{target}' does not exist"))
        try:
            os.symlink(target, link)
        except OSError as e:
            raise BuildError(f"Could not link {alias} to {target}: {e}") from e
        created.append(alias)
    return created


def write_index(base_dir: str, theme_name: str) -> bool:
    index_file = os.path.join(base_dir, "index.theme")
    if os.path.exists(index_file):
        return False
    os.makedirs(base_dir, exist_ok=True)
    with open(index_file, "w", encoding="utf-8") as f:
        f.write(f"[Icon Theme]\nName={theme_name}\n")
    return True


async def build(config: BuildConfig) -> None:
    specs = load_specs(config.specs_dir)
    in_files = write_configs(specs, config.sizes, config.build_dir)

    await render(config)
    await compile_cursors(config, in_files)

    if config.platform == "unix":
        if os.path.isfile(config.aliases_file):
            link_aliases(config.cursor_dir, read_aliases(config.aliases_file))
        else:
            print(yellow(f"{config.aliases_file} not found, no aliases created"))
        write_index(config.base_dir, THEME_NAMES[config.variant])


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Builds the capitaine-cursor theme.")
    parser.add_argument(
        "-d", "--max-dpi", default=DensityTier.TV.value,
        help="Max DPI to render, higher values take longer. "
             f"One of ({', '.join(t.value for t in DensityTier)}).")
    parser.add_argument("-t", "--type", dest="variant", choices=VARIANTS, default=VARIANTS[0])
    parser.add_argument("-p", "--platform", choices=PLATFORMS, default=PLATFORMS[0])
    parser.add_argument("--src", default="src", help="Source directory (default: src)")
    parser.add_argument("--dist", default="dist", help="Output directory (default: dist)")
    parser.add_argument("--build-dir", default="_build", help="Intermediate files (default: _build)")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        sizes = select_scale_factors(args.max_dpi)
        require_tools(args.platform)
        config = BuildConfig(
            src_dir=os.path.abspath(args.src),
            dist_dir=os.path.abspath(args.dist),
            build_dir=os.path.abspath(args.build_dir),
            variant=args.variant,
            platform=args.platform,
            sizes=sizes
        )
        asyncio.run(build(config))
    except BuildError as e:
        print(red(str(e)))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
