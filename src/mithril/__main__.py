import os
import sys


def _prog():
    p = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "mithril"
    if not p or p == "__main__.py":
        return "mithril"
    return p


def _get_version() -> str:
    from importlib.metadata import PackageNotFoundError, version as _pkg_version

    try:
        return _pkg_version("mithril-workbench")
    except PackageNotFoundError:
        from . import __version__ as _v

        return str(_v)


def _print_version(out=None) -> None:
    if out is None:
        out = sys.stdout
    out.write(f"{_prog()} {_get_version()}\n")


def _usage(out=None):
    if out is None:
        out = sys.stderr
    p = _prog()
    out.write(f"{p} {_get_version()}\n")
    out.write(f"usage: {p} [-h] [-V|--version] (mod|clean) [args]\n")
    out.write("\n")
    out.write("Options:\n")
    out.write("  -V, --version   Show version and exit\n")
    out.write("\n")
    out.write("Environment:\n")
    out.write("  MITHRIL_DIR     Workspace root (default: ./mithril-data)\n")
    out.write("\n")
    out.write("Workspace:\n")
    out.write(f"  {p} mod init                        Extract the baseline from client/Data\n")
    out.write(f"  {p} mod create <name> [--description TEXT]\n")
    out.write(f"  {p} mod remove <name>\n")
    out.write(f"  {p} mod list\n")
    out.write(f"  {p} mod status [--mod NAME]\n")
    out.write(f"  {p} mod build [--mod NAME ...] [--sql]\n")
    out.write("\n")
    out.write("Tables:\n")
    out.write(f"  {p} mod dbc list | search <regex> [--mod M] | inspect <name>\n")
    out.write(f"  {p} mod dbc set <name> --mod M --where K=V --set C=V [--set C=V ...]\n")
    out.write(f"  {p} mod dbc edit <name> --mod M\n")
    out.write(f"  {p} mod dbc import [--force] | export | query \"<SQL>\"\n")
    out.write("\n")
    out.write("Interface files:\n")
    out.write(f"  {p} mod addon list | search <regex> [--mod M]\n")
    out.write(f"  {p} mod addon create|remove|edit <path> --mod M\n")
    out.write("\n")
    out.write("SQL migrations:\n")
    out.write(f"  {p} mod sql create <name> --mod M [--db DB]\n")
    out.write(f"  {p} mod sql remove <migration> --mod M [--rollback]\n")
    out.write(f"  {p} mod sql list|status|apply [--mod M]\n")
    out.write(f"  {p} mod sql rollback --mod M [<migration>] [--reapply]\n")
    out.write("\n")
    out.write("Client executable patches:\n")
    out.write(f"  {p} mod patch list | status | restore\n")
    out.write(f"  {p} mod patch apply <name|path.json> [...] [--mod M]\n")
    out.write("\n")
    out.write("Server source:\n")
    out.write(f"  {p} mod core create|remove <name> --mod M\n")
    out.write(f"  {p} mod core list|status|apply [--mod M]\n")
    out.write(f"  {p} mod script create <name> --mod M [--type T]\n")
    out.write(f"  {p} mod script remove <name> --mod M\n")
    out.write(f"  {p} mod script list [--mod M] | sync\n")
    out.write("\n")
    out.write("Sharing:\n")
    out.write(f"  {p} mod publish register --mod M --repo URL\n")
    out.write(f"  {p} mod publish export --mod M [--sql]\n")
    out.write(f"  {p} mod registry list | search <query> | info <name> | install <name>\n")
    out.write("\n")
    out.write("Maintenance:\n")
    out.write(f"  {p} clean [--all] [--yes]\n")
    out.write(f"  {p} clean --trackers\n")


def _usage_short(out=None):
    if out is None:
        out = sys.stderr
    p = _prog()
    out.write(f"{p} {_get_version()}\n")
    out.write(f"usage: {p} [-h] [-V|--version] (mod|clean) [args]\n")
    out.write(f"Try '{p} --help' for more information.\n")


_MOD_GROUPS = {
    "init": "baseline",
    "create": "workspace",
    "remove": "workspace",
    "list": "workspace",
    "status": "workspace",
    "build": "packager",
    "dbc": "dbctool",
    "addon": "addons",
    "sql": "migrations",
    "patch": "patcher",
    "core": "corepatch",
    "script": "scripts",
    "publish": "publish",
    "registry": "registry",
}

# these modules take the subcommand itself as their first argument
_PASS_COMMAND = ("workspace",)


def _run_mod(argv):
    if not argv or argv[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if argv else None)
        return 0 if argv else 2
    cmd = argv[0]
    target = _MOD_GROUPS.get(cmd)
    if target is None:
        sys.stderr.write(f"{_prog()}: unknown mod command: {cmd}\n")
        return 2
    from importlib import import_module

    module = import_module(f".{target}", __package__)
    args = argv if target in _PASS_COMMAND else argv[1:]
    return module.main(args)


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    if argv and argv[0] in ("-V", "--version", "version"):
        _print_version()
        return 0
    if not argv:
        _usage_short()
        return 0
    if argv[0] in ("-h", "--help", "help"):
        _usage()
        return 0
    mode = argv[0]

    if mode == "mod":
        rc = _run_mod(argv[1:])
        if rc == 2:
            _usage_short()
        return rc

    if mode == "clean":
        from . import clean

        rc = clean.main(argv[1:])
        if rc == 2:
            _usage_short()
        return rc

    sys.stderr.write(f"{_prog()}: unknown command: {mode}\n")
    _usage_short()
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
