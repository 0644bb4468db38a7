"""
Zentrale Merge-Logik für INI-Ebenen.

Priorität (höchste zuerst):
    Server-Override > Cluster-Default > globaler Default

Ein Server auf der Exclusion-Liste bekommt die globale Ebene gar nicht.
Identitätsfelder (SessionName, Ports, Passwörter) setzt der
ConfigGenerator nach dem Merge fest, sie sind nicht überschreibbar.
"""

from __future__ import annotations
from copy import deepcopy
from typing import Optional

from ..models import IniSections
from ..logging_setup import get_logger

log = get_logger("asa.launcher.merger")


class IniMerger:
    """
    Merged INI-Sektionen schichtweise.

    Strategie:
    - Sektionen werden vereinigt
    - Schlüssel einer höheren Ebene ersetzen die der niedrigeren
    - Leere Ebene = "nichts überschreiben"
    """

    def merge(
        self,
        global_defaults: Optional[IniSections],
        cluster_defaults: Optional[IniSections],
        server_overrides: Optional[IniSections],
        *,
        excluded: bool = False,
    ) -> IniSections:
        """
        Args:
            global_defaults: global-configs/*.ini
            cluster_defaults: Cluster-Ebene (Multiplikatoren etc.)
            server_overrides: Pro-Server Werte
            excluded: True = globale Ebene wird ignoriert

        Returns:
            Neues Dict, Eingaben werden nicht verändert
        """
        layers = []
        if not excluded and global_defaults:
            layers.append(global_defaults)
        if cluster_defaults:
            layers.append(cluster_defaults)
        if server_overrides:
            layers.append(server_overrides)

        result: IniSections = {}
        for layer in layers:
            result = self.merge_layer(result, layer)
        return result

    def merge_layer(self, base: IniSections, top: IniSections) -> IniSections:
        result = deepcopy(base)
        for section, values in top.items():
            target = result.setdefault(section, {})
            for key, value in values.items():
                target[key] = str(value)
        return result
