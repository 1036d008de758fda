import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .common import BadInput, NotInitialized

CONFIG_NAME = "mithril.json"

REGISTRY_INDEX_URL = "https://api.github.com/repos/suprsokr/mithril-registry/contents/mods"
REGISTRY_MODS_URL = "https://raw.githubusercontent.com/suprsokr/mithril-registry/main/mods"

DEFAULT_SQL_RUNNER = [
    "mysql",
    "-h",
    "{host}",
    "-P",
    "{port}",
    "-u",
    "{user}",
    "-p{password}",
    "{database}",
]


def _default_root() -> Path:
    env = os.environ.get("MITHRIL_DIR")
    if env:
        return Path(env)
    return Path.cwd() / "mithril-data"


@dataclass
class MySQLSettings:
    host: str = "127.0.0.1"
    port: int = 3306
    user: str = "trinity"
    password: str = "trinity"
    root_user: str = "root"
    root_password: str = "mithril"
    database: str = "dbc"


@dataclass
class Config:
    root: Path
    patch_letter: str = "M"
    mysql: MySQLSettings = field(default_factory=MySQLSettings)
    database_url: Optional[str] = None
    sql_runner: List[str] = field(default_factory=lambda: list(DEFAULT_SQL_RUNNER))
    dbc_source: str = "csv"
    source_dir: Optional[Path] = None
    client_dir: Optional[Path] = None
    server_dbc_dir: Optional[Path] = None
    registry_index_url: str = REGISTRY_INDEX_URL
    registry_mods_url: str = REGISTRY_MODS_URL

    def __post_init__(self):
        self.root = Path(self.root)
        if self.source_dir is None:
            self.source_dir = self.root / "TrinityCore"
        if self.client_dir is None:
            self.client_dir = self.root / "client"
        if self.server_dbc_dir is None:
            self.server_dbc_dir = self.root / "data" / "dbc"

    @property
    def client_data_dir(self) -> Path:
        return self.client_dir / "Data"

    @property
    def exe_path(self) -> Path:
        return self.client_dir / "Wow.exe"

    @property
    def modules_dir(self) -> Path:
        return self.root / "modules"

    @property
    def baseline_dir(self) -> Path:
        return self.modules_dir / "baseline"

    @property
    def baseline_dbc_dir(self) -> Path:
        return self.baseline_dir / "dbc"

    @property
    def baseline_csv_dir(self) -> Path:
        return self.baseline_dir / "csv"

    @property
    def baseline_addons_dir(self) -> Path:
        return self.baseline_dir / "addons"

    @property
    def manifest_path(self) -> Path:
        return self.baseline_dir / "manifest.json"

    @property
    def build_dir(self) -> Path:
        return self.modules_dir / "build"

    @property
    def dbc_export_dir(self) -> Path:
        return self.build_dir / "dbc_export"

    def mod_dir(self, name: str) -> Path:
        return self.modules_dir / name

    def tracker_path(self, name: str) -> Path:
        return self.modules_dir / name

    def require_baseline(self) -> None:
        if not self.manifest_path.is_file():
            raise NotInitialized(
                "baseline not found; run 'mithril mod init' first "
                f"(expected {self.manifest_path})"
            )

    def runner_argv(self, database: str) -> List[str]:
        values = {
            "database": database,
            "user": self.mysql.user,
            "password": self.mysql.password,
            "host": self.mysql.host,
            "port": str(self.mysql.port),
        }
        return [part.format(**values) for part in self.sql_runner]


def _apply_overrides(cfg: Config, data: Dict) -> None:
    letter = str(data.get("patch_letter") or "").strip()
    if letter:
        letter = letter.upper()
        if len(letter) != 1 or not ("A" <= letter <= "Z"):
            raise BadInput(f"{CONFIG_NAME}: patch_letter must be a single letter A-Z")
        cfg.patch_letter = letter
    my = data.get("mysql") or {}
    if not isinstance(my, dict):
        raise BadInput(f"{CONFIG_NAME}: 'mysql' must be an object")
    for key in (
        "host",
        "user",
        "password",
        "root_user",
        "root_password",
        "database",
    ):
        if my.get(key) is not None:
            setattr(cfg.mysql, key, str(my[key]))
    if my.get("port") is not None:
        cfg.mysql.port = int(my["port"])
    if data.get("database_url"):
        cfg.database_url = str(data["database_url"])
    runner = data.get("sql_runner")
    if runner:
        if isinstance(runner, str):
            runner = runner.split()
        cfg.sql_runner = [str(x) for x in runner]
    source = str(data.get("dbc_source") or "").strip().lower()
    if source:
        if source not in ("csv", "sql"):
            raise BadInput(f"{CONFIG_NAME}: dbc_source must be 'csv' or 'sql'")
        cfg.dbc_source = source
    for key in ("registry_index_url", "registry_mods_url"):
        if data.get(key):
            setattr(cfg, key, str(data[key]).rstrip("/"))
    for key in ("source_dir", "client_dir", "server_dbc_dir"):
        if data.get(key):
            p = Path(data[key])
            if not p.is_absolute():
                p = cfg.root / p
            setattr(cfg, key, p)


def load_config(root: Optional[os.PathLike] = None) -> Config:
    cfg = Config(Path(root) if root is not None else _default_root())
    p = cfg.root / CONFIG_NAME
    if p.is_file():
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise BadInput(f"{p}: {e}") from e
        if not isinstance(data, dict):
            raise BadInput(f"{p}: expected a JSON object")
        _apply_overrides(cfg, data)
    return cfg
