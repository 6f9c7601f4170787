"""
Configuration store – loads role/resource/security-rule sections, caches them
with a TTL and swaps the derived RoleCatalog atomically on reload.
"""

import copy
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger

from authz.catalog import RoleCatalog, RoleDefinition
from authz.config import CONFIG_CACHE_TTL_SECONDS, ROLE_CONFIG_PATH
from authz.defaults import DEFAULT_CONFIG
from authz.exceptions import AuthorizationError, ConfigurationError

SECTIONS = ("roles", "resources", "security_rules")


# ── Sources ──────────────────────────────────────────────────────────

class DictConfigSource:
    """Sections held in memory (built-in defaults, tests)."""

    def __init__(self, sections: Optional[Mapping[str, Any]] = None):
        self.sections = copy.deepcopy(dict(sections if sections is not None else DEFAULT_CONFIG))

    def load_sections(self) -> Dict[str, Any]:
        return copy.deepcopy(self.sections)

    def load_section(self, name: str) -> Any:
        if name not in self.sections:
            raise ConfigurationError(f"Unknown configuration section: {name}")
        return copy.deepcopy(self.sections[name])


class JsonFileConfigSource:
    """A JSON document whose top-level keys are configuration sections."""

    def __init__(self, path: str):
        self.path = path

    def load_sections(self) -> Dict[str, Any]:
        try:
            with open(self.path, encoding="utf-8") as fp:
                data = json.load(fp)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Could not read configuration {self.path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration {self.path} must be a JSON object")
        return data

    def load_section(self, name: str) -> Any:
        data = self.load_sections()
        if name not in data:
            raise ConfigurationError(f"Section '{name}' missing from {self.path}")
        return data[name]


def default_source():
    """JSON file from ROLE_CONFIG_PATH when set, else the built-in catalog."""
    if ROLE_CONFIG_PATH:
        return JsonFileConfigSource(ROLE_CONFIG_PATH)
    return DictConfigSource()


# ── Store ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class _State:
    sections: Mapping[str, Any]
    loaded_at: Mapping[str, datetime]
    catalog: RoleCatalog
    version: int


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConfigurationStore:
    """Single writer, many readers; readers never see a half-applied catalog."""

    def __init__(self, source=None, ttl_seconds: int = CONFIG_CACHE_TTL_SECONDS):
        self.source = source if source is not None else default_source()
        self.ttl = timedelta(seconds=ttl_seconds)
        self._state: Optional[_State] = None
        self._write_lock = threading.Lock()
        self._listeners: List[Callable[[int], None]] = []

    # ==================== LIFECYCLE ====================

    def load(self) -> RoleCatalog:
        """Load every section; any problem is fatal (raises ConfigurationError)."""
        with self._write_lock:
            sections = self._read_all()
            catalog = self._build(sections)
            now = _now()
            version = self._state.version + 1 if self._state else 1
            self._state = _State(
                sections=sections,
                loaded_at={name: now for name in sections},
                catalog=catalog,
                version=version,
            )
        logger.info(
            f"Role catalog loaded (version {version}, {len(catalog.roles)} roles, "
            f"{len(catalog.resources)} resources)"
        )
        return catalog

    def reload(self, key: str) -> RoleCatalog:
        """Replace one section; on failure the previous catalog stays in place."""
        with self._write_lock:
            state = self._require_state()
            try:
                section = self.source.load_section(key)
                candidate = dict(state.sections)
                candidate[key] = section
                catalog = self._build(candidate)
            except ConfigurationError as e:
                logger.error(f"Reload of section '{key}' failed, keeping version {state.version}: {e}")
                raise
            loaded_at = dict(state.loaded_at)
            loaded_at[key] = _now()
            self._state = _State(
                sections=candidate,
                loaded_at=loaded_at,
                catalog=catalog,
                version=state.version + 1,
            )
            version = self._state.version
        logger.info(f"Configuration section '{key}' reloaded (version {version})")
        self._notify(version)
        return catalog

    def invalidate(self, key: Optional[str] = None) -> None:
        """Expire one section (or all) so the next read refreshes it."""
        with self._write_lock:
            state = self._require_state()
            expired = datetime.min.replace(tzinfo=timezone.utc)
            loaded_at = dict(state.loaded_at)
            for name in ([key] if key else list(loaded_at)):
                loaded_at[name] = expired
            self._state = _State(state.sections, loaded_at, state.catalog, state.version)

    def add_reload_listener(self, listener: Callable[[int], None]) -> None:
        self._listeners.append(listener)

    # ==================== READS ====================

    @property
    def version(self) -> int:
        return self._state.version if self._state else 0

    @property
    def catalog(self) -> RoleCatalog:
        state = self._require_state()
        if self._expired_sections(state):
            self._refresh_expired()
            state = self._state
        return state.catalog

    def get(self, role: str) -> RoleDefinition:
        return self.catalog.get(role)

    def section(self, name: str) -> Any:
        state = self._require_state()
        if name in self._expired_sections(state):
            self._refresh_expired()
            state = self._state
        if name not in state.sections:
            raise ConfigurationError(f"Unknown configuration section: {name}")
        return copy.deepcopy(state.sections[name])

    # ==================== INTERNALS ====================

    def _require_state(self) -> _State:
        if self._state is None:
            raise ConfigurationError("Configuration has not been loaded")
        return self._state

    def _expired_sections(self, state: _State) -> List[str]:
        cutoff = _now() - self.ttl
        return [name for name, at in state.loaded_at.items() if at < cutoff]

    def _refresh_expired(self) -> None:
        refreshed = None
        with self._write_lock:
            state = self._state
            expired = self._expired_sections(state)
            if not expired:
                return
            now = _now()
            loaded_at = dict(state.loaded_at)
            try:
                candidate = dict(state.sections)
                for name in expired:
                    candidate[name] = self.source.load_section(name)
                catalog = self._build(candidate)
            except ConfigurationError as e:
                # Keep serving the last good catalog until the next TTL window.
                logger.error(f"Configuration refresh failed, keeping version {state.version}: {e}")
                for name in expired:
                    loaded_at[name] = now
                self._state = _State(state.sections, loaded_at, state.catalog, state.version)
                return
            for name in expired:
                loaded_at[name] = now
            changed = candidate != dict(state.sections)
            version = state.version + 1 if changed else state.version
            self._state = _State(candidate, loaded_at, catalog if changed else state.catalog, version)
            if changed:
                refreshed = version
        if refreshed is not None:
            logger.info(f"Configuration refreshed after TTL expiry (version {refreshed})")
            self._notify(refreshed)

    def _read_all(self) -> Dict[str, Any]:
        try:
            sections = self.source.load_sections()
        except ConfigurationError:
            raise
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Could not read configuration: {e}")
        missing = [name for name in SECTIONS[:2] if name not in sections]
        if missing:
            raise ConfigurationError(f"Missing configuration sections: {', '.join(missing)}")
        return dict(sections)

    @staticmethod
    def _build(sections: Mapping[str, Any]) -> RoleCatalog:
        try:
            return RoleCatalog.from_config(sections)
        except AuthorizationError as e:
            raise ConfigurationError(str(e))

    def _notify(self, version: int) -> None:
        for listener in list(self._listeners):
            listener(version)
