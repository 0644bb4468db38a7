"""
mods.py - mod list resolution for ASA servers
---------------------------------------------
Final list = ordered, de-duplicated union of enabled shared mods and the
server's own mods. `exclude_shared_mods` drops the shared part. Naming
rules (MOD_POLICY_RULES) supply defaults for servers matching a pattern.
"""

from __future__ import annotations
import re
from typing import Iterable, List, Optional

from .models import ServerConfig, SharedMod
from .settings import ModPolicyRule
from .logging_setup import get_logger

log = get_logger("asa.launcher.mods")


def dedup(ids: Iterable[int]) -> List[int]:
    seen = set()
    out = []
    for mid in ids:
        mid = int(mid)
        if mid not in seen:
            seen.add(mid)
            out.append(mid)
    return out


def resolve_final_mods(shared: Iterable[int], server: Iterable[int], exclude_shared: bool) -> List[int]:
    if exclude_shared:
        return dedup(server)
    return dedup(list(shared) + list(server))


class ModResolver:
    def __init__(self, rules: List[ModPolicyRule]):
        self.rules = list(rules)
        self._compiled = [(re.compile(r.pattern, re.IGNORECASE), r) for r in self.rules]

    def rule_for(self, server_name: str) -> Optional[ModPolicyRule]:
        for pattern, rule in self._compiled:
            if pattern.search(server_name):
                return rule
        return None

    def apply_defaults(self, cfg: ServerConfig) -> ServerConfig:
        """Fill in naming-rule defaults for a new server (explicit mods win)."""
        rule = self.rule_for(cfg.name)
        if rule is None:
            return cfg
        patch = {"exclude_shared_mods": cfg.exclude_shared_mods or rule.exclude_shared}
        if not cfg.mods:
            patch["mods"] = list(rule.mods)
        log.info(f"Mod policy {rule.pattern!r} applied to {cfg.name}: {patch}")
        return cfg.model_copy(update=patch)

    def final_mods(self, cfg: ServerConfig, shared: List[SharedMod]) -> List[int]:
        enabled = [m.id for m in shared if m.enabled]
        rule = self.rule_for(cfg.name)
        exclude = cfg.exclude_shared_mods or bool(rule and rule.exclude_shared)
        return resolve_final_mods(enabled, cfg.mods, exclude)
