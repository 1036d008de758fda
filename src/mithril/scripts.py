"""Server-side C++ scripts shipped by mods.

Sync copies every mod script into the server source tree's Custom scripts
directory as ``<mod>_<file>``, drops files whose mod script went away, and
regenerates ``custom_script_loader.cpp`` from the ``AddSC_*`` functions found
in the synced ``.cpp`` files.
"""

from __future__ import annotations

import os
import re
import shutil
import sys
from dataclasses import dataclass
from typing import List, Optional

from .common import (
    BadInput,
    Conflict,
    MithrilError,
    NotInitialized,
    eprint,
    file_md5,
    pop_option,
    read_json,
    write_json,
    write_text,
)
from .config import Config, load_config
from .workspace import all_mods, require_mod

TRACKER = "scripts_applied.json"
SCRIPT_EXTENSIONS = (".cpp", ".h")
CUSTOM_DIR = os.path.join("src", "server", "scripts", "Custom")
LOADER = "custom_script_loader.cpp"
DEFAULT_TYPE = "creature"
_ADDSC = re.compile(r"^\s*void\s+(AddSC_\w+)\s*\(")

_HEADER = """/*
 * Script: {name}
 * Mod:    {mod}
 * Type:   {type}
 *
 * Custom server script, synced by "mithril mod build".
 */

"""

_REGISTER = """
void AddSC_{base}()
{{
    {register};
}}
"""

# spell scripts go through the registration macro instead of a bare new
_REGISTRATIONS = {"spell": "RegisterSpellScript({cls})"}

_BODIES = {
    "creature": """#include "ScriptMgr.h"
#include "Creature.h"
#include "CreatureAI.h"
#include "ScriptedCreature.h"

class {cls} : public CreatureScript
{{
public:
    {cls}() : CreatureScript("{base}") {{ }}

    struct {cls}AI : public ScriptedAI
    {{
        {cls}AI(Creature* creature) : ScriptedAI(creature) {{ }}

        void JustEngagedWith(Unit* /*who*/) override {{ }}

        void UpdateAI(uint32 /*diff*/) override
        {{
            if (!UpdateVictim())
                return;

            DoMeleeAttackIfReady();
        }}
    }};

    CreatureAI* GetAI(Creature* creature) const override
    {{
        return new {cls}AI(creature);
    }}
}};
""",
    "player": """#include "ScriptMgr.h"
#include "Player.h"
#include "Chat.h"

class {cls} : public PlayerScript
{{
public:
    {cls}() : PlayerScript("{base}") {{ }}

    void OnLogin(Player* player, bool /*firstLogin*/) override
    {{
        ChatHandler(player->GetSession()).PSendSysMessage("Welcome, %s!", player->GetName().c_str());
    }}
}};
""",
    "spell": """#include "ScriptMgr.h"
#include "SpellScript.h"

class {cls} : public SpellScript
{{
    PrepareSpellScript({cls});

    void HandleDummy(SpellEffIndex /*effIndex*/)
    {{
        if (!GetCaster() || !GetHitUnit())
            return;
    }}

    void Register() override
    {{
        OnEffectHitTarget += SpellEffectFn({cls}::HandleDummy, EFFECT_0, SPELL_EFFECT_DUMMY);
    }}
}};
""",
    "command": """#include "ScriptMgr.h"
#include "Chat.h"
#include "ChatCommand.h"

using namespace Trinity::ChatCommands;

class {cls} : public CommandScript
{{
public:
    {cls}() : CommandScript("{base}") {{ }}

    ChatCommandTable GetCommands() const override
    {{
        static ChatCommandTable commandTable =
        {{
            {{ "{base}", HandleCommand, rbac::RBAC_PERM_COMMAND_GM, Console::No }},
        }};
        return commandTable;
    }}

    static bool HandleCommand(ChatHandler* handler)
    {{
        handler->SendSysMessage("{base}: ok");
        return true;
    }}
}};
""",
    "worldscript": """#include "ScriptMgr.h"
#include "Log.h"

class {cls} : public WorldScript
{{
public:
    {cls}() : WorldScript("{base}") {{ }}

    void OnStartup() override
    {{
        TC_LOG_INFO("server.loading", "{base} loaded");
    }}
}};
""",
    "item": """#include "ScriptMgr.h"
#include "Item.h"
#include "Player.h"

class {cls} : public ItemScript
{{
public:
    {cls}() : ItemScript("{base}") {{ }}

    bool OnUse(Player* /*player*/, Item* /*item*/, SpellCastTargets const& /*targets*/) override
    {{
        return false;
    }}
}};
""",
    "gameobject": """#include "ScriptMgr.h"
#include "GameObject.h"
#include "GameObjectAI.h"

class {cls} : public GameObjectScript
{{
public:
    {cls}() : GameObjectScript("{base}") {{ }}

    struct {cls}AI : public GameObjectAI
    {{
        {cls}AI(GameObject* go) : GameObjectAI(go) {{ }}

        bool OnGossipHello(Player* /*player*/) override
        {{
            return false;
        }}
    }};

    GameObjectAI* GetAI(GameObject* go) const override
    {{
        return new {cls}AI(go);
    }}
}};
""",
    "areatrigger": """#include "ScriptMgr.h"
#include "Player.h"

class {cls} : public AreaTriggerScript
{{
public:
    {cls}() : AreaTriggerScript("{base}") {{ }}

    bool OnTrigger(Player* /*player*/, AreaTriggerEntry const* /*trigger*/) override
    {{
        return false;
    }}
}};
""",
    "unit": """#include "ScriptMgr.h"
#include "Unit.h"

class {cls} : public UnitScript
{{
public:
    {cls}() : UnitScript("{base}") {{ }}

    void OnDamage(Unit* /*attacker*/, Unit* /*victim*/, uint32& /*damage*/) override {{ }}
}};
""",
}

SCRIPT_TYPES = tuple(_BODIES)


@dataclass
class SyncResult:
    copied: List[str]
    removed: List[str]
    functions: List[str]

    @property
    def changed(self) -> bool:
        return bool(self.copied or self.removed)


def snake_to_pascal(s: str) -> str:
    return "".join(p[:1].upper() + p[1:] for p in s.split("_"))


def script_filename(name: str) -> str:
    safe = name.lower().replace(" ", "_")
    if not safe.endswith(SCRIPT_EXTENSIONS):
        safe += ".cpp"
    return safe


def render_template(script_type: str, name: str, mod: str, base: str) -> str:
    body = _BODIES.get(script_type)
    if body is None:
        raise BadInput(
            f"unknown script type: {script_type} (valid: {', '.join(SCRIPT_TYPES)})"
        )
    cls = snake_to_pascal(base)
    return (
        _HEADER.format(name=name, mod=mod, type=script_type)
        + body.format(cls=cls, base=base)
        + _REGISTER.format(
            base=base, register=_REGISTRATIONS.get(script_type, "new {cls}()").format(cls=cls)
        )
    )


def find_scripts(cfg: Config, mod: str) -> List[str]:
    d = cfg.mod_dir(mod) / "scripts"
    if not d.is_dir():
        return []
    return sorted(
        p.name for p in d.iterdir() if p.is_file() and p.name.lower().endswith(SCRIPT_EXTENSIONS)
    )


def create_script(cfg: Config, mod: str, name: str, script_type: str = DEFAULT_TYPE) -> str:
    require_mod(cfg, mod)
    fname = script_filename(name)
    path = cfg.mod_dir(mod) / "scripts" / fname
    if path.exists():
        raise Conflict(f"script already exists: {path}")
    base = os.path.splitext(fname)[0]
    write_text(str(path), render_template(script_type, name, mod, base))
    return str(path)


def remove_script(cfg: Config, mod: str, name: str) -> str:
    require_mod(cfg, mod)
    path = cfg.mod_dir(mod) / "scripts" / script_filename(name)
    if not path.is_file():
        raise BadInput(f"script not found: {path}")
    os.remove(path)
    return str(path)


def load_tracker(cfg: Config) -> List[dict]:
    data = read_json(str(cfg.tracker_path(TRACKER)), {}) or {}
    return list(data.get("scripts") or [])


def save_tracker(cfg: Config, entries: List[dict]) -> None:
    write_json(str(cfg.tracker_path(TRACKER)), {"scripts": entries})


def addsc_functions(path: str) -> List[str]:
    out = []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            m = _ADDSC.match(line)
            if m:
                out.append(m.group(1))
    return out


def render_loader(functions: List[str]) -> str:
    lines = ["// Auto-generated by mithril; do not edit manually", ""]
    lines += ["void %s();" % fn for fn in functions]
    lines += ["", "void AddCustomScripts()", "{"]
    lines += ["    %s();" % fn for fn in functions]
    lines += ["}", ""]
    return "\n".join(lines)


def custom_dir(cfg: Config) -> str:
    return os.path.join(str(cfg.source_dir), CUSTOM_DIR)


def sync_scripts(cfg: Config, out=None) -> SyncResult:
    if out is None:
        out = sys.stdout
    if not os.path.isdir(str(cfg.source_dir)):
        raise NotInitialized(f"server source not found at {cfg.source_dir}")
    dest = custom_dir(cfg)
    os.makedirs(dest, exist_ok=True)

    previous = {e.get("container_file"): e for e in load_tracker(cfg)}
    wanted = []
    for mod in all_mods(cfg):
        for fname in find_scripts(cfg, mod):
            src = str(cfg.mod_dir(mod) / "scripts" / fname)
            wanted.append(
                {"mod": mod, "file": fname, "container_file": "%s_%s" % (mod, fname),
                 "checksum": file_md5(src), "_src": src}
            )

    copied = []
    for w in wanted:
        target = os.path.join(dest, w["container_file"])
        prev = previous.get(w["container_file"])
        if prev and prev.get("checksum") == w["checksum"] and os.path.isfile(target):
            continue
        shutil.copyfile(w["_src"], target)
        out.write("  synced %s/%s\n" % (w["mod"], w["file"]))
        copied.append(w["container_file"])

    keep = {w["container_file"] for w in wanted}
    removed = []
    for name, e in previous.items():
        if name in keep:
            continue
        target = os.path.join(dest, str(name))
        if os.path.isfile(target):
            os.remove(target)
        out.write("  removed %s/%s\n" % (e.get("mod"), e.get("file")))
        removed.append(str(name))

    functions = []
    for w in wanted:
        if w["file"].lower().endswith(".cpp"):
            functions += addsc_functions(w["_src"])
    write_text(os.path.join(dest, LOADER), render_loader(functions))

    save_tracker(cfg, [{k: v for k, v in w.items() if not k.startswith("_")} for w in wanted])
    return SyncResult(copied, removed, functions)


def prune_tracker(cfg: Config) -> int:
    entries = load_tracker(cfg)
    keep = [e for e in entries if (cfg.mod_dir(str(e.get("mod", ""))) / "scripts" / str(e.get("file", ""))).is_file()]
    if len(keep) != len(entries):
        save_tracker(cfg, keep)
    return len(entries) - len(keep)


def _usage(out=None):
    if out is None:
        out = sys.stderr
    out.write("usage: mithril mod script create <name> --mod M [--type T]\n")
    out.write("       mithril mod script remove <name> --mod M\n")
    out.write("       mithril mod script list [--mod M]\n")
    out.write("       mithril mod script sync\n")
    out.write("types: %s\n" % ", ".join(SCRIPT_TYPES))


def main(argv=None, cfg: Optional[Config] = None) -> int:
    args = list(argv or [])
    if not args or args[0] in ("-h", "--help", "help"):
        _usage(sys.stdout if args else None)
        return 0 if args else 2
    cmd = args.pop(0)
    out = sys.stdout
    try:
        mod = pop_option(args, "--mod")
        cfg = cfg or load_config()
        if cmd == "create":
            script_type = pop_option(args, "--type") or DEFAULT_TYPE
            if len(args) != 1 or not mod:
                _usage()
                return 2
            path = create_script(cfg, mod, args[0], script_type)
            out.write("Created %s script: %s\n" % (script_type, path))
            return 0
        if cmd == "remove":
            if len(args) != 1 or not mod:
                _usage()
                return 2
            out.write("Removed: %s\n" % remove_script(cfg, mod, args[0]))
            return 0
        if cmd == "list":
            if mod:
                require_mod(cfg, mod)
            found = 0
            for m in [mod] if mod else all_mods(cfg):
                names = find_scripts(cfg, m)
                if not names:
                    continue
                out.write("%s:\n" % m)
                for n in names:
                    out.write("  %s\n" % n)
                found += len(names)
            if not found:
                out.write("No scripts.\n")
            return 0
        if cmd == "sync":
            res = sync_scripts(cfg, out)
            out.write(
                "Scripts: %d synced, %d removed, %d registered\n"
                % (len(res.copied), len(res.removed), len(res.functions))
            )
            return 0
    except (MithrilError, OSError) as e:
        eprint("mod script %s: %s" % (cmd, e))
        return 1
    eprint("mod script: unknown command: %s" % cmd)
    return 2
