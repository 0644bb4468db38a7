from __future__ import annotations
import asyncio
import os
import shutil
import subprocess
import tarfile
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .config.file_layout import FleetLayout
from .errors import BinaryInstallError, InstallBusyError
from .settings import Settings
from .logging_setup import get_logger

log = get_logger("asa.launcher.steamcmd")

ProgressSink = Callable[[str], None]

STEAMCMD_URLS = {
    "windows": "https://steamcdn-a.akamaihd.net/client/installer/steamcmd.zip",
    "posix": "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz",
}

# steamcmd chatter that is never worth a log line
NOISE = [
    "Redirecting stderr to",
    "ILocalize::AddFile()",
    "WARNING: setlocale(",
    "Logging directory:",
    "UpdateUI: ",
    "Restarting steamcmd by",
    "Steam Console Client ",
    "type 'quit'",
    "Loading Steam API",
    "Waiting for client config",
    "aiting for user info",
]

# forwarded to the job as progress
PROGRESS_MARKERS = ["Update state", "Downloading update", "Extracting", "Verifying", "Success"]


def transient_reason(output: str) -> Optional[str]:
    """Name of a retryable steamcmd failure found in one output line, else None."""
    if "Rate Limit Exceeded" in output or "HTTP 429" in output:
        return "rate limited"
    if "Timeout" in output or "Failed to connect" in output:
        return "timeout"
    lowered = output.lower()
    if "result 26" in lowered or "request revoked" in lowered:
        return "login revoked (result 26)"
    return None


def _mask_cmd(cmd: List[str]) -> List[str]:
    """Masked copy of cmd: username/password after '+login' are replaced (anonymous stays)."""
    tokens = list(map(str, cmd))
    for idx, t in enumerate(tokens):
        if t == "+login" and idx + 1 < len(tokens) and tokens[idx + 1] != "anonymous":
            tokens[idx + 1] = "<REDACTED_USER>"
            if idx + 2 < len(tokens) and not tokens[idx + 2].startswith("+"):
                tokens[idx + 2] = "<REDACTED_PW>"
            break
    return tokens


class SteamCMD:
    """
    Installs/updates ASA server binaries.

    Concurrent steamcmd runs against one install tree corrupt it, so every
    install goes through one asyncio lock (this process) and one file lock
    (other launcher processes on the same host).
    """

    def __init__(self, settings: Settings, layout: FleetLayout):
        self.settings = settings
        self.layout = layout
        self.bin = settings.steamcmd_path
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # --- Datei-basierter plattformübergreifender Mutex für steamcmd ---
    @contextmanager
    def _steamcmd_mutex(self, timeout: float):
        """
        Acquire a filesystem lock to serialize steamcmd invocations across processes.
        Uses fcntl on POSIX and msvcrt on Windows. Waits up to `timeout` seconds.
        """
        lock_path = self.layout.install_lock
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(lock_path, "a+b")
        start = time.time()
        try:
            if os.name == "nt":
                import msvcrt
                while True:
                    try:
                        msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
                        break
                    except OSError:
                        if time.time() - start > timeout:
                            raise BinaryInstallError("Timeout acquiring steamcmd lock")
                        time.sleep(0.1)
            else:
                import fcntl
                while True:
                    try:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except OSError:
                        if time.time() - start > timeout:
                            raise BinaryInstallError("Timeout acquiring steamcmd lock")
                        time.sleep(0.1)
            log.debug(f"Acquired steamcmd lock: {lock_path}")
            yield
        finally:
            try:
                if os.name == "nt":
                    import msvcrt
                    lock_file.seek(0)
                    try:
                        msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                    except OSError as e:
                        log.debug(f"Unlock failed (lock already released?): {e}")
                else:
                    import fcntl
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            finally:
                lock_file.close()
                log.debug(f"Released steamcmd lock: {lock_path}")
    # --- Ende Mutex ---

    def build_cmd(self, install_dir: Path, *, validate: bool = True) -> List[str]:
        cmd = [
            str(self.bin),
            "+force_install_dir", str(install_dir),
            "+login", "anonymous",
            "+app_update", str(self.settings.asa_app_id),
        ]
        if validate:
            cmd.append("validate")
        cmd.append("+quit")
        return cmd

    # --- steamcmd runs ---

    def _attempt(self, cmd: List[str], emit: ProgressSink) -> Tuple[int, Optional[str]]:
        """
        One steamcmd run with streamed output.

        Returns:
            (returncode, reason) - reason names a transient failure that made us kill the run
        """
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                    text=True, bufsize=1, errors="replace")
        except OSError as e:
            raise BinaryInstallError(f"Cannot start steamcmd at {cmd[0]}: {e}") from e

        timeout = self.settings.install_timeout_seconds
        expired = threading.Event()

        def expire() -> None:
            expired.set()
            proc.kill()

        timer = threading.Timer(timeout, expire)
        timer.daemon = True
        timer.start()
        reason = None
        try:
            with proc:
                for line in proc.stdout:
                    output = line.rstrip()
                    if not output or any(m in output for m in NOISE):
                        continue
                    if any(m in output for m in PROGRESS_MARKERS):
                        log.info("steamcmd: %s", output)
                        emit(output.strip())
                    else:
                        log.debug("steamcmd: %s", output)
                    reason = transient_reason(output)
                    if reason:
                        log.warning("SteamCMD %s, killing process for a retry", reason)
                        proc.kill()
                        break
                returncode = proc.wait()
        finally:
            timer.cancel()
        if expired.is_set():
            reason = f"no exit within {timeout:.0f}s"
        return returncode, reason

    def _run(self, cmd: List[str], emit: ProgressSink) -> None:
        retries = self.settings.install_retries
        with self._steamcmd_mutex(self.settings.install_lock_timeout_seconds):
            for attempt in range(1, retries + 1):
                log.info("SteamCMD attempt %d/%d: %s", attempt, retries, " ".join(_mask_cmd(cmd)))
                returncode, reason = self._attempt(cmd, emit)
                if returncode == 0 and reason is None:
                    log.info("SteamCMD finished successfully.")
                    return
                log.warning("SteamCMD attempt %d/%d failed (rc=%s%s)", attempt, retries, returncode,
                            f", {reason}" if reason else "")
                if attempt == retries:
                    break
                # exponential backoff (capped)
                backoff = min(self.settings.install_retry_seconds * (2 ** (attempt - 1)), 600)
                emit(f"SteamCMD failed, retrying in {backoff:.0f}s ({attempt}/{retries})")
                time.sleep(backoff)
        raise BinaryInstallError(f"SteamCMD failed after {retries} attempts. See launcher.log for details.")

    # --- steamcmd itself ---

    def _candidates(self) -> List[Path]:
        paths = [self.settings.steamcmd_path]
        names = ["steamcmd.exe"] if os.name == "nt" else ["steamcmd.sh", "steamcmd"]
        for name in names:
            found = shutil.which(name)
            if found:
                paths.append(Path(found))
        if os.name == "nt":
            paths += [Path(r"C:\steamcmd\steamcmd.exe"), Path(r"C:\SteamCMD\steamcmd.exe")]
            for env in ("USERPROFILE", "PROGRAMFILES", "PROGRAMFILES(X86)"):
                if os.environ.get(env):
                    paths.append(Path(os.environ[env]) / "steamcmd" / "steamcmd.exe")
        else:
            paths += [Path("/usr/games/steamcmd"), Path("/opt/steamcmd/steamcmd.sh"),
                      Path.home() / "steamcmd" / "steamcmd.sh"]
        return paths

    def find_existing(self) -> Optional[Path]:
        for path in self._candidates():
            if path.is_file():
                return path
        return None

    def download_url(self) -> str:
        return self.settings.steamcmd_url or STEAMCMD_URLS["windows" if os.name == "nt" else "posix"]

    def _download_and_unpack(self, emit: ProgressSink) -> Path:
        target = self.settings.steamcmd_path
        dest = target.parent
        url = self.download_url()
        archive = dest / (Path(urllib.parse.urlparse(url).path).name or "steamcmd-download")
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BinaryInstallError(f"Cannot create {dest}: {e}") from e

        emit(f"Downloading steamcmd from {url}")
        log.info("Downloading steamcmd from %s to %s", url, dest)
        try:
            req = urllib.request.Request(url, headers={"User-Agent": "asa-launcher"})
            with urllib.request.urlopen(req, timeout=60) as resp, open(archive, "wb") as fh:
                shutil.copyfileobj(resp, fh)

            emit("Unpacking steamcmd")
            if zipfile.is_zipfile(archive):
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(dest)
            else:
                with tarfile.open(archive) as tf:
                    if hasattr(tarfile, "data_filter"):
                        tf.extractall(dest, filter="data")
                    else:
                        tf.extractall(dest)
        except (urllib.error.URLError, zipfile.BadZipFile, tarfile.TarError, OSError) as e:
            raise BinaryInstallError(f"steamcmd download from {url} failed: {e}") from e
        finally:
            archive.unlink(missing_ok=True)

        if not target.is_file():
            raise BinaryInstallError(f"steamcmd archive from {url} did not contain {target.name}")
        if os.name != "nt":
            target.chmod(target.stat().st_mode | 0o755)
        log.info("steamcmd installed at %s", target)
        return target

    def _ensure_locked(self, emit: ProgressSink) -> Path:
        found = self.find_existing()
        if found is not None:
            self.bin = found
            return found
        if not self.settings.steamcmd_auto_install:
            raise BinaryInstallError(
                f"steamcmd not found (STEAMCMD_PATH={self.settings.steamcmd_path}) and STEAMCMD_AUTO_INSTALL is off")
        with self._steamcmd_mutex(self.settings.install_lock_timeout_seconds):
            # another launcher on this host may have finished the download meanwhile
            if self.settings.steamcmd_path.is_file():
                self.bin = self.settings.steamcmd_path
            else:
                self.bin = self._download_and_unpack(emit)
        return self.bin

    async def ensure(self, progress: Optional[ProgressSink] = None) -> Path:
        """Locate steamcmd, downloading it when missing. Returns its path."""
        emit = progress or (lambda _msg: None)
        async with self._lock:
            return await asyncio.to_thread(self._ensure_locked, emit)

    # --- ASA binaries ---

    def executable(self, install_dir: Path) -> Path:
        return FleetLayout.server_executable(install_dir, self.settings.server_executable)

    def is_installed(self, install_dir: Path) -> bool:
        return self.executable(install_dir).exists()

    def status(self, install_dirs: Dict[str, Path]) -> Dict:
        found = self.find_existing()
        return {
            "steamcmd": {
                "installed": found is not None,
                "path": str(found or self.settings.steamcmd_path),
                "auto_install": self.settings.steamcmd_auto_install,
            },
            "busy": self.busy,
            "servers": {
                name: {"installed": self.is_installed(d), "executable": str(self.executable(d))}
                for name, d in install_dirs.items()
            },
        }

    def _install(self, install_dir: Path, validate: bool, emit: ProgressSink) -> None:
        self._ensure_locked(emit)
        install_dir.mkdir(parents=True, exist_ok=True)
        self._run(self.build_cmd(install_dir, validate=validate), emit)

    async def ensure_app(self, install_dir: Path, *, validate: bool = True, wait: bool = True,
                         progress: Optional[ProgressSink] = None) -> Path:
        """
        Install or update ASA into install_dir.

        Args:
            wait: False = raise InstallBusyError instead of queueing behind a running install

        Returns:
            Path of the server executable
        """
        emit = progress or (lambda _msg: None)
        if self.settings.skip_install:
            log.info("SKIP_INSTALL: not installing ASA binaries into %s", install_dir)
            emit(f"Skipping binary install for {install_dir.name}")
            return self.executable(install_dir)

        if not wait and self._lock.locked():
            raise InstallBusyError("Another binary install is in progress")

        async with self._lock:
            emit(f"Installing ASA binaries into {install_dir}")
            await asyncio.to_thread(self._install, install_dir, validate, emit)

        exe = self.executable(install_dir)
        if not exe.exists():
            raise BinaryInstallError(f"Install finished but {exe} is missing")
        emit(f"ASA binaries ready in {install_dir}")
        log.info("ASA binaries verified at %s", exe)
        return exe
