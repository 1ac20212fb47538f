#!/usr/bin/env python3
"""unbound-rsh - Registry-driven DNS sinkhole for Unbound

Periodically downloads a remote registry of blocked domains (by default the
Polish gambling-domain register, "Rejestr Stron Hazardowych"), renders it into
an Unbound include file that redirects every listed domain to a fixed address,
and reloads Unbound so the new configuration takes effect.

Every cycle runs fetch -> normalize -> render -> write -> reload. Fetch and
write are retried with randomized exponential backoff; reload is attempted
once per cycle and its failure never rolls back the written file.

Environment variables (most can be overridden by a command-line flag). Every
RSH_* option and SYNC_MODE can also be set in the YAML config file under its
option name: register_endpoint, output_path, redirect, reload_command,
reload_timeout_seconds, sync_mode, sync_interval_seconds, http_timeout_seconds,
retry_max_attempts, retry_max_elapsed_seconds, retry_initial_interval_seconds,
retry_max_interval_seconds, fail_fast_on_structural. RSH_CONFIG_PATH and
LOG_LEVEL are environment/flag only.

    Registry:
        RSH_REGISTER_ENDPOINT        Registry URL returning the XML register
                                     (default: https://www.hazard.mf.gov.pl/api/Register)
        RSH_HTTP_TIMEOUT_SECONDS     Timeout for the registry request (default: 60)

    Output:
        RSH_OUTPUT                   Unbound include file to write
                                     (default: /etc/unbound/rsh.conf)
        RSH_REDIRECT                 Address every listed domain resolves to
                                     (default: 145.237.235.240). An IPv6 address
                                     produces AAAA records.

    Resolver:
        RSH_RELOAD_COMMAND           Command that reloads the resolver
                                     (default: "systemctl reload unbound")
        RSH_RELOAD_TIMEOUT_SECONDS   Kill the reload command after this long,
                                     0 disables the limit (default: 120)

    Retry:
        RSH_RETRY_MAX_ATTEMPTS               0 = unlimited (default: 0)
        RSH_RETRY_MAX_ELAPSED_SECONDS        0 = unlimited (default: 900)
        RSH_RETRY_INITIAL_INTERVAL_SECONDS   First backoff bound (default: 0.5)
        RSH_RETRY_MAX_INTERVAL_SECONDS       Backoff cap (default: 60)
        RSH_FAIL_FAST_ON_STRUCTURAL          Do not retry malformed or empty
                                             registry payloads (default: false)

    Runtime:
        SYNC_MODE                    "once" or "watch" (default: watch)
        RSH_SYNC_INTERVAL_SECONDS    Period between cycles in watch mode
                                     (default: 21600, i.e. 6 hours)
        RSH_CONFIG_PATH              Optional YAML config file
        LOG_LEVEL                    DEBUG, INFO, WARNING, ERROR (default: INFO)

Example YAML config file:

    register_endpoint: "https://www.hazard.mf.gov.pl/api/Register"
    output_path: "/etc/unbound/rsh.conf"
    redirect: "145.237.235.240"
    reload_command: ["unbound-control", "reload"]
    sync_interval_seconds: 21600
"""

from __future__ import annotations

import argparse
import logging
import os
import shlex
import signal
import subprocess
import sys
import tempfile
import threading
import time
import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass, fields
from enum import Enum
from ipaddress import ip_address
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests
import yaml
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    stop_when_event_set,
    wait_random_exponential,
)

__version__ = "0.1.0"

DEFAULT_REGISTER_ENDPOINT = "https://www.hazard.mf.gov.pl/api/Register"
DEFAULT_OUTPUT_PATH = "/etc/unbound/rsh.conf"
DEFAULT_REDIRECT = "145.237.235.240"
DEFAULT_RELOAD_COMMAND = ("systemctl", "reload", "unbound")

SYNC_MODES = ("once", "watch")

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Errors
# =============================================================================


class FetchErrorKind(Enum):
    TRANSPORT = "transport"
    READ_FAILURE = "read_failure"
    PARSE_FAILURE = "parse_failure"
    EMPTY_RESULT = "empty_result"


class WriteErrorKind(Enum):
    PERMISSION = "permission"
    IO_FAILURE = "io_failure"


class ReloadErrorKind(Enum):
    PROCESS_FAILURE = "process_failure"
    CANCELED = "canceled"


# Kinds worth retrying even when structural errors are configured to fail fast.
TRANSIENT_FETCH_ERRORS = frozenset({FetchErrorKind.TRANSPORT, FetchErrorKind.READ_FAILURE})


class SyncError(Exception):
    """Base class for failures of a single sync stage."""

    stage = "sync"

    def __init__(self, kind: Enum, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.stage} failed ({self.kind.value}): {self.message}"


class FetchError(SyncError):
    stage = "fetch"


class WriteError(SyncError):
    stage = "write"


class ReloadError(SyncError):
    stage = "reload"


class ConfigError(Exception):
    """Raised when configuration values cannot be parsed."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class RegistryEntry:
    """One record of the remote registry."""

    address: str


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one fetch -> normalize -> render -> write -> reload pass."""

    entries: int
    domains: int
    path: str
    reloaded: bool
    reload_error: Optional[str] = None


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class SyncConfig:
    """Runtime configuration, built once at startup."""

    register_endpoint: str = DEFAULT_REGISTER_ENDPOINT
    output_path: str = DEFAULT_OUTPUT_PATH
    redirect: str = DEFAULT_REDIRECT
    reload_command: Tuple[str, ...] = DEFAULT_RELOAD_COMMAND
    reload_timeout_seconds: float = 120.0
    sync_mode: str = "watch"
    sync_interval_seconds: float = 6 * 60 * 60
    http_timeout_seconds: float = 60.0
    retry_max_attempts: int = 0
    retry_max_elapsed_seconds: float = 900.0
    retry_initial_interval_seconds: float = 0.5
    retry_max_interval_seconds: float = 60.0
    fail_fast_on_structural: bool = False


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_command(value: Any) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(str(part) for part in value)
    return tuple(shlex.split(str(value)))


def _parse_str(value: Any) -> str:
    return str(value).strip()


def _parse_mode(value: Any) -> str:
    return str(value).strip().lower()


# option name -> (environment variable, parser)
_OPTIONS: Dict[str, Tuple[str, Callable[[Any], Any]]] = {
    "register_endpoint": ("RSH_REGISTER_ENDPOINT", _parse_str),
    "output_path": ("RSH_OUTPUT", _parse_str),
    "redirect": ("RSH_REDIRECT", _parse_str),
    "reload_command": ("RSH_RELOAD_COMMAND", _parse_command),
    "reload_timeout_seconds": ("RSH_RELOAD_TIMEOUT_SECONDS", float),
    "sync_mode": ("SYNC_MODE", _parse_mode),
    "sync_interval_seconds": ("RSH_SYNC_INTERVAL_SECONDS", float),
    "http_timeout_seconds": ("RSH_HTTP_TIMEOUT_SECONDS", float),
    "retry_max_attempts": ("RSH_RETRY_MAX_ATTEMPTS", int),
    "retry_max_elapsed_seconds": ("RSH_RETRY_MAX_ELAPSED_SECONDS", float),
    "retry_initial_interval_seconds": ("RSH_RETRY_INITIAL_INTERVAL_SECONDS", float),
    "retry_max_interval_seconds": ("RSH_RETRY_MAX_INTERVAL_SECONDS", float),
    "fail_fast_on_structural": (
        "RSH_FAIL_FAST_ON_STRUCTURAL",
        lambda value: _parse_bool(value, default=False),
    ),
}


def _load_yaml_config(config_path: str) -> Dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def load_config(
    args: Optional[argparse.Namespace] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SyncConfig:
    """Build the configuration from YAML file, environment and flags.

    Later sources win: defaults < YAML file < environment < command-line flags.
    """
    if environ is None:
        environ = os.environ

    raw: Dict[str, Any] = {}

    config_path = getattr(args, "config", None) or environ.get("RSH_CONFIG_PATH", "")
    if config_path:
        raw.update(_load_yaml_config(config_path))

    for name, (env_name, _) in _OPTIONS.items():
        if env_name in environ:
            raw[name] = environ[env_name]

    if args is not None:
        for name in _OPTIONS:
            value = getattr(args, name, None)
            if value is not None:
                raw[name] = value

    values: Dict[str, Any] = {}
    for name, value in raw.items():
        if name not in _OPTIONS:
            raise ConfigError(f"Unknown configuration option: {name}")
        # A YAML key with no value leaves the option unset.
        if value is None:
            continue
        parser = _OPTIONS[name][1]
        try:
            values[name] = parser(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {name}: {value!r} ({e})") from e

    return SyncConfig(**values)


def validate_config(config: SyncConfig) -> bool:
    """Validate configuration."""
    errors = []

    endpoint = urlparse(config.register_endpoint)
    if endpoint.scheme not in ("http", "https") or not endpoint.netloc:
        errors.append(f"Registry endpoint must be an http(s) URL: '{config.register_endpoint}'")

    try:
        ip_address(config.redirect)
    except ValueError:
        errors.append(f"Redirect target must be an IP address: '{config.redirect}'")

    if not config.output_path:
        errors.append("Output path is required")

    if not config.reload_command:
        errors.append("Reload command must not be empty")

    if config.sync_mode not in SYNC_MODES:
        errors.append(f"Invalid SYNC_MODE: {config.sync_mode}. Use 'once' or 'watch'")

    if config.sync_interval_seconds <= 0:
        errors.append("Sync interval must be positive")
    if config.http_timeout_seconds <= 0:
        errors.append("HTTP timeout must be positive")
    if config.reload_timeout_seconds < 0:
        errors.append("Reload timeout must not be negative")
    if config.retry_max_attempts < 0 or config.retry_max_elapsed_seconds < 0:
        errors.append("Retry limits must not be negative (use 0 for unlimited)")
    if config.retry_initial_interval_seconds <= 0:
        errors.append("Retry initial interval must be positive")
    if config.retry_max_interval_seconds < config.retry_initial_interval_seconds:
        errors.append("Retry max interval must not be smaller than the initial interval")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


# =============================================================================
# Registry Fetcher
# =============================================================================


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


class RegistryFetcher:
    """Downloads and parses the XML register."""

    ROOT_TAG = "Rejestr"
    ENTRY_TAG = "PozycjaRejestru"
    ADDRESS_TAG = "AdresDomeny"

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self._endpoint = endpoint
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", f"unbound-rsh/{__version__}")

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def fetch(self) -> List[RegistryEntry]:
        try:
            response = self._session.get(self._endpoint, timeout=self._timeout, stream=True)
        except requests.exceptions.RequestException as e:
            raise FetchError(FetchErrorKind.TRANSPORT, f"while connecting to registry: {e}") from e

        with response:
            try:
                response.raise_for_status()
            except requests.exceptions.RequestException as e:
                raise FetchError(
                    FetchErrorKind.TRANSPORT, f"while connecting to registry: {e}"
                ) from e
            try:
                body = response.content
            except requests.exceptions.RequestException as e:
                raise FetchError(
                    FetchErrorKind.READ_FAILURE, f"while downloading registry: {e}"
                ) from e

        entries = self.parse(body)
        if not entries:
            raise FetchError(FetchErrorKind.EMPTY_RESULT, "zero results in registry")
        return entries

    @classmethod
    def parse(cls, body: bytes) -> List[RegistryEntry]:
        """Parse a register document.

        Tags are matched by local name so a default namespace on the document
        does not matter. Unknown elements under the root are ignored; an entry
        without an address is a parse failure.
        """
        try:
            root = ElementTree.fromstring(body)
        except ElementTree.ParseError as e:
            raise FetchError(FetchErrorKind.PARSE_FAILURE, f"while parsing registry: {e}") from e

        if _local_name(root.tag) != cls.ROOT_TAG:
            raise FetchError(
                FetchErrorKind.PARSE_FAILURE,
                f"while parsing registry: expected <{cls.ROOT_TAG}> root, "
                f"got <{_local_name(root.tag)}>",
            )

        entries: List[RegistryEntry] = []
        for position, item in enumerate(root, start=1):
            if _local_name(item.tag) != cls.ENTRY_TAG:
                continue
            address = next(
                (child for child in item if _local_name(child.tag) == cls.ADDRESS_TAG), None
            )
            if address is None:
                raise FetchError(
                    FetchErrorKind.PARSE_FAILURE,
                    f"while parsing registry: element #{position} has no <{cls.ADDRESS_TAG}>",
                )
            entries.append(RegistryEntry(address=address.text or ""))
        return entries


# =============================================================================
# Normalizing and Rendering
# =============================================================================


def normalize_domains(entries: Iterable[RegistryEntry]) -> List[str]:
    """Deduplicate registry addresses (exact match) and sort them."""
    return sorted({entry.address for entry in entries})


def _record_type(redirect: str) -> str:
    try:
        return "AAAA" if ip_address(redirect).version == 6 else "A"
    except ValueError:
        return "A"


def render_config(domains: Iterable[str], redirect: str) -> str:
    """Render Unbound local-zone/local-data pairs redirecting each domain."""
    record_type = _record_type(redirect)
    lines: List[str] = []
    for domain in domains:
        lines.append(f'local-zone: "{domain}" redirect')
        lines.append(f'local-data: "{domain} {record_type} {redirect}"')
    return "".join(f"{line}\n" for line in lines)


# =============================================================================
# Config Writer
# =============================================================================


class ConfigWriter:
    """Replaces the output file atomically (temp file, fsync, rename)."""

    def __init__(self, path: str, mode: int = 0o644):
        self.path = Path(path)
        self.mode = mode

    def write(self, content: str) -> None:
        tmp_name: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, self.mode)
            os.replace(tmp_name, self.path)
            tmp_name = None
        except PermissionError as e:
            raise WriteError(WriteErrorKind.PERMISSION, f"while writing {self.path}: {e}") from e
        except OSError as e:
            raise WriteError(WriteErrorKind.IO_FAILURE, f"while writing {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass

        self._sync_directory()

    def _sync_directory(self) -> None:
        # Persist the rename itself; not every filesystem allows this.
        try:
            fd = os.open(str(self.path.parent), os.O_RDONLY)
        except OSError as e:
            logger.debug(f"Could not open {self.path.parent} for fsync: {e}")
            return
        try:
            os.fsync(fd)
        except OSError as e:
            logger.debug(f"Could not fsync {self.path.parent}: {e}")
        finally:
            os.close(fd)


# =============================================================================
# Resolver Reloader
# =============================================================================


class ResolverReloader:
    """Runs the resolver's reload command once per call."""

    POLL_INTERVAL_SECONDS = 0.1
    TERMINATE_GRACE_SECONDS = 5.0

    def __init__(self, command: Iterable[str], timeout_seconds: Optional[float] = None):
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds or None

    def reload(self, stop_event: Optional[threading.Event] = None) -> None:
        display = " ".join(self.command)
        try:
            process = subprocess.Popen(
                list(self.command),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise ReloadError(
                ReloadErrorKind.PROCESS_FAILURE, f"could not run '{display}': {e}"
            ) from e

        deadline = None
        if self.timeout_seconds is not None:
            deadline = time.monotonic() + self.timeout_seconds

        while True:
            try:
                _, stderr = process.communicate(timeout=self.POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                pass

            if stop_event is not None and stop_event.is_set():
                self._terminate(process)
                raise ReloadError(ReloadErrorKind.CANCELED, f"'{display}' canceled")

            if deadline is not None and time.monotonic() >= deadline:
                process.kill()
                process.communicate()
                raise ReloadError(
                    ReloadErrorKind.PROCESS_FAILURE,
                    f"'{display}' timed out after {self.timeout_seconds:g}s",
                )

        if process.returncode != 0:
            detail = (stderr or "").strip()
            message = f"'{display}' exited with status {process.returncode}"
            if detail:
                message = f"{message}: {detail}"
            raise ReloadError(ReloadErrorKind.PROCESS_FAILURE, message)

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.communicate(timeout=self.TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()


# =============================================================================
# Sync Orchestrator
# =============================================================================


class SyncOrchestrator:
    """Runs sync cycles: once at startup, then on a fixed period until stopped.

    Cycles never overlap; they all run on the thread that calls run_forever().
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        fetcher: Optional[RegistryFetcher] = None,
        writer: Optional[ConfigWriter] = None,
        reloader: Optional[ResolverReloader] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.config = config
        self.fetcher = fetcher or RegistryFetcher(
            config.register_endpoint, timeout_seconds=config.http_timeout_seconds
        )
        self.writer = writer or ConfigWriter(config.output_path)
        self.reloader = reloader or ResolverReloader(
            config.reload_command, timeout_seconds=config.reload_timeout_seconds
        )
        self._stop_event = stop_event or threading.Event()
        self._done = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._thread: Optional[threading.Thread] = None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # -- retry policy ---------------------------------------------------------

    def _retrying(self, stage: str, should_retry: Callable[[BaseException], bool]) -> Retrying:
        stop = stop_when_event_set(self._stop_event)
        if self.config.retry_max_attempts > 0:
            stop = stop | stop_after_attempt(self.config.retry_max_attempts)
        if self.config.retry_max_elapsed_seconds > 0:
            stop = stop | stop_after_delay(self.config.retry_max_elapsed_seconds)

        def log_backoff(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Retrying {stage} in {delay:.1f}s (attempt {retry_state.attempt_number} failed)"
            )

        return Retrying(
            stop=stop,
            wait=wait_random_exponential(
                multiplier=self.config.retry_initial_interval_seconds,
                max=self.config.retry_max_interval_seconds,
                exp_base=1.5,
            ),
            retry=retry_if_exception(should_retry),
            sleep=self._sleep,
            before_sleep=log_backoff,
            reraise=True,
        )

    def _should_retry_fetch(self, error: BaseException) -> bool:
        if not isinstance(error, FetchError):
            return False
        if self.config.fail_fast_on_structural:
            return error.kind in TRANSIENT_FETCH_ERRORS
        return True

    @staticmethod
    def _should_retry_write(error: BaseException) -> bool:
        return isinstance(error, WriteError)

    def _retry_stage(
        self,
        stage: str,
        should_retry: Callable[[BaseException], bool],
        operation: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """Run operation under the retry policy.

        A stop requested during a backoff sleep ends the stage with the last
        error instead of starting another attempt.
        """
        last_error: Optional[SyncError] = None

        def attempt() -> Any:
            nonlocal last_error
            if last_error is not None and self._stop_event.is_set():
                logger.info(f"Stop requested; abandoning {stage}")
                raise last_error
            try:
                return operation(*args)
            except SyncError as e:
                last_error = e
                raise

        return self._retrying(stage, should_retry)(attempt)

    # -- stages ---------------------------------------------------------------

    def _download(self) -> List[RegistryEntry]:
        logger.info("Trying to download registry...")
        try:
            return self.fetcher.fetch()
        except FetchError as e:
            logger.error(f"Could not get registry: {e}")
            raise

    def _write(self, content: str) -> None:
        logger.info("Trying to write config...")
        try:
            self.writer.write(content)
        except WriteError as e:
            logger.error(f"Could not write config: {e}")
            raise

    def run_cycle(self) -> CycleResult:
        """Run fetch -> normalize -> render -> write -> reload once.

        Raises FetchError or WriteError when their stage gives up. A reload
        failure is logged and reported in the result instead.
        """
        entries = self._retry_stage(
            "registry download", self._should_retry_fetch, self._download
        )
        logger.info(f"Got registry: {len(entries)} entries")

        domains = normalize_domains(entries)
        logger.info(f"After deduplication: {len(domains)} entries")

        content = render_config(domains, self.config.redirect)
        self._retry_stage("config write", self._should_retry_write, self._write, content)
        logger.info(f"Config written to {self.config.output_path}. Reloading resolver.")

        reload_error: Optional[str] = None
        try:
            self.reloader.reload(self._stop_event)
        except ReloadError as e:
            logger.error(f"Could not reload resolver: {e}")
            reload_error = str(e)
        else:
            logger.info("Resolver reloaded.")

        return CycleResult(
            entries=len(entries),
            domains=len(domains),
            path=self.config.output_path,
            reloaded=reload_error is None,
            reload_error=reload_error,
        )

    # -- scheduling -----------------------------------------------------------

    def _run_logged_cycle(self, label: str) -> Optional[CycleResult]:
        try:
            return self.run_cycle()
        except SyncError as e:
            logger.error(f"While populating config {label}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error during {label} sync: {e}", exc_info=True)
        return None

    def run_forever(self) -> None:
        """Startup cycle, then one cycle per interval until stop() is called.

        Ticks that fall due while a cycle is still running are dropped.
        """
        interval = self.config.sync_interval_seconds
        try:
            if self._run_logged_cycle("at startup") is None:
                logger.error("Continuing anyway...")
            logger.info("Initial config update done.")

            next_tick = time.monotonic() + interval
            while not self._stop_event.is_set():
                if self._stop_event.wait(max(0.0, next_tick - time.monotonic())):
                    break
                now = time.monotonic()
                while next_tick <= now:
                    next_tick += interval

                logger.info("Starting periodic config update...")
                if self._run_logged_cycle("periodically") is not None:
                    logger.info("Periodic config update done.")
        finally:
            logger.info("Stopping runner.")
            self._done.set()

    def start(self) -> threading.Thread:
        """Run run_forever() on a background thread."""
        if self._thread is not None:
            raise RuntimeError("Orchestrator already started")
        self._thread = threading.Thread(
            target=self.run_forever, name="unbound-rsh-sync", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for run_forever() to return; False if the timeout expired."""
        return self._done.wait(timeout)


# =============================================================================
# Main
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="unbound-rsh",
        description="Keep an Unbound sinkhole config in sync with a remote domain registry.",
    )
    parser.add_argument("--config", help="YAML config file (env: RSH_CONFIG_PATH)")
    parser.add_argument(
        "--register-endpoint",
        dest="register_endpoint",
        help="Address of the registry endpoint",
    )
    parser.add_argument(
        "--output", dest="output_path", help="Path to generated Unbound config file"
    )
    parser.add_argument("--redirect", help="Address to redirect to")
    parser.add_argument(
        "--reload-command", dest="reload_command", help="Command that reloads the resolver"
    )
    parser.add_argument(
        "--interval",
        dest="sync_interval_seconds",
        help="Seconds between periodic updates",
    )
    parser.add_argument(
        "--once",
        dest="sync_mode",
        action="store_const",
        const="once",
        help="Run a single update and exit",
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR (env: LOG_LEVEL)")
    return parser


def _install_signal_handlers(orchestrator: SyncOrchestrator) -> None:
    def handle_signal(signum: int, frame: Optional[object]) -> None:
        logger.info(f"Received {signal.Signals(signum).name}; shutting down gracefully...")
        orchestrator.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))

    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(str(e))
        logger.error("Configuration validation failed")
        sys.exit(1)

    if not validate_config(config):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info("Starting up...")
    logger.info(f"Registry: {config.register_endpoint}")
    logger.info(f"Output: {config.output_path} (redirect to {config.redirect})")
    logger.info(f"Reload command: {' '.join(config.reload_command)}")
    logger.info(f"Sync mode: {config.sync_mode}")
    if config.sync_mode == "watch":
        logger.info(f"Sync interval: {config.sync_interval_seconds:g}s")
    for field in fields(SyncConfig):
        logger.debug(f"  {field.name} = {getattr(config, field.name)!r}")

    orchestrator = SyncOrchestrator(config)

    if config.sync_mode == "once":
        try:
            result = orchestrator.run_cycle()
        except SyncError as e:
            logger.error(f"Config update failed: {e}")
            sys.exit(1)
        if not result.reloaded:
            sys.exit(1)
        return

    _install_signal_handlers(orchestrator)
    try:
        orchestrator.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")


if __name__ == "__main__":
    main()
