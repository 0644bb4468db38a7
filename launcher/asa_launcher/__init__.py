"""
asa_launcher package
--------------------
Fleet manager for ARK: Survival Ascended dedicated servers.
Contains modules for settings, provisioning (scripts, INI files, SteamCMD),
native process supervision, RCON, cluster fan-out, background jobs and
idle auto-shutdown, exposed through a small REST API and CLI.
"""

__version__ = "0.4.0"
