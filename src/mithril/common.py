import hashlib
import json
import os
import shlex
import shutil
import subprocess
import sys
from datetime import datetime, timezone

KNOWN_LOCALES = (
    "enUS",
    "enGB",
    "deDE",
    "frFR",
    "esES",
    "esMX",
    "ruRU",
    "koKR",
    "zhCN",
    "zhTW",
    "ptBR",
    "itIT",
)

RESERVED_MOD_NAMES = ("baseline", "build")


class MithrilError(Exception):
    pass


class NotInitialized(MithrilError):
    pass


class BadInput(MithrilError, ValueError):
    pass


class BadMagic(BadInput):
    pass


class Truncated(BadInput):
    pass


class SchemaMismatch(BadInput):
    pass


class UnknownFieldType(BadInput):
    pass


class OutOfBounds(BadInput):
    pass


class Conflict(MithrilError):
    pass


class ExternalFailure(MithrilError, RuntimeError):
    pass


class Inconsistent(MithrilError):
    pass


def read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def write_bytes(path: str, data: bytes) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def write_text(path: str, text: str, enc: str = "utf-8") -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding=enc, newline="\n") as f:
        f.write(text)


def read_json(path: str, default=None):
    if not os.path.isfile(path):
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: str, obj) -> None:
    write_text(path, json.dumps(obj, indent=2, ensure_ascii=False) + "\n")


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def file_md5(path: str) -> str:
    return md5_hex(read_bytes(path))


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def eprint(msg: str, errors: str = "backslashreplace") -> None:
    try:
        sys.stderr.write(msg + "\n")
        sys.stderr.flush()
    except UnicodeEncodeError:
        sys.stderr.buffer.write((msg + "\n").encode("utf-8", errors=errors))
        sys.stderr.flush()


def warn(msg: str) -> None:
    eprint("warning: " + msg)


def iter_files_by_ext(root: str, extensions):
    ext_set = {ext.lower() for ext in extensions}
    out = []
    if not os.path.isdir(root):
        return out
    for dirpath, _dirs, filenames in os.walk(root):
        for name in filenames:
            if not any(name.lower().endswith(ext) for ext in ext_set):
                continue
            out.append(os.path.join(dirpath, name))
    return sorted(out)


def relpath_slash(path: str, root: str) -> str:
    return os.path.relpath(path, root).replace(os.sep, "/")


def remove_empty_dirs(path: str, stop: str) -> None:
    path = os.path.abspath(path)
    stop = os.path.abspath(stop)
    while path != stop and path.startswith(stop + os.sep):
        try:
            if os.listdir(path):
                return
            os.rmdir(path)
        except OSError:
            return
        path = os.path.dirname(path)


def pop_flag(args: list, *names) -> bool:
    hit = False
    for n in names:
        while n in args:
            args.remove(n)
            hit = True
    return hit


def pop_option(args: list, *names, multi: bool = False):
    """Remove `--opt VALUE` / `--opt=VALUE` pairs from args.

    Returns the last value (or every value with multi=True); raises
    BadInput when an option is given without a value.
    """
    values = []
    i = 0
    while i < len(args):
        a = args[i]
        hit = None
        for n in names:
            if a == n:
                if i + 1 >= len(args):
                    raise BadInput(f"{n} requires a value")
                hit = args[i + 1]
                del args[i : i + 2]
                break
            if a.startswith(n + "="):
                hit = a[len(n) + 1 :]
                del args[i]
                break
        if hit is None:
            i += 1
            continue
        values.append(hit)
    if multi:
        return values
    return values[-1] if values else None


_FALLBACK_EDITORS = ("code", "vim", "nano", "vi")


def find_editor():
    for var in ("EDITOR", "VISUAL"):
        v = os.environ.get(var, "").strip()
        if v:
            return v
    for name in _FALLBACK_EDITORS:
        if shutil.which(name):
            return name
    return None


def open_in_editor(path: str) -> None:
    editor = find_editor()
    if editor is None:
        raise NotInitialized(f"no editor found; set $EDITOR and open {path} yourself")
    argv = shlex.split(editor) + [path]
    if os.path.basename(argv[0]) == "code":
        argv.insert(1, "--wait")
    try:
        rc = subprocess.call(argv)
    except FileNotFoundError as e:
        raise ExternalFailure(f"editor not found: {argv[0]}") from e
    if rc != 0:
        raise ExternalFailure(f"editor exited with status {rc}")
