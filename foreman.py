#!/usr/bin/env python3
"""
foreman.py

Operator console for a remote job-processing backend: job drafts, schedules,
delayed work and the live event stream.
"""

from __future__ import annotations

import argparse
import asyncio
import calendar
import contextlib
import json
import logging
import re
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional, Set, Tuple
from urllib.parse import quote, urlsplit, urlunsplit

import aiohttp

try:
    import yaml
except ImportError:  # pragma: no cover - dependency check at runtime
    yaml = None

try:
    from croniter import croniter
except ImportError:  # pragma: no cover - dependency check at runtime
    croniter = None


LOG_FILE = "foreman.log"
DEFAULT_CONFIG = "foreman.yaml"
DEFAULT_ENDPOINT = "http://127.0.0.1:8080"
DEFAULT_REQUEST_TIMEOUT_MS = 10000
DEFAULT_RECONNECT_DELAY_MS = 1000
DEFAULT_OBSERVER_MIN_DELAY_MS = 1000
DEFAULT_OBSERVER_DENSE_THRESHOLD = 5
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_WAIT_SECONDS = 10
STREAM_HEARTBEAT_SECONDS = 30.0

MIN_YEAR = 1900
MAX_YEAR = 2100
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_GET = "get"

MODE_JOBS = "jobs"
MODE_DELAYED_WORKS = "delayed_works"

SCHEDULE_MODE_TIME = "time"
SCHEDULE_MODE_CRONTAB = "crontab"

CLASS_PRIMARY = "text-primary"
CLASS_INFO = "text-info"
CLASS_SUCCESS = "text-success"
CLASS_DANGER = "text-danger"

PARAM_TYPE_FLAG = "flag"
PARAM_TYPE_DATETIME = "datetime"
VALID_PARAM_TYPES = {"flag", "text", "textarea", "datetime", "combo"}

DMY_HMS_RE = re.compile(r"([0-9]{2})-([0-9]{2})-([0-9]{4})\s+([0-9]{2}):([0-9]{2}):([0-9]{2})")
YMD_HMS_RE = re.compile(r"([0-9]{4})-?([0-9]{2})-?([0-9]{2})\s*([0-9]{2}):?([0-9]{2}):?([0-9]{2})")
DMY_RE = re.compile(r"([0-9]{2})-([0-9]{2})-([0-9]{4})")
YMD_RE = re.compile(r"([0-9]{4})-?([0-9]{2})-?([0-9]{2})")
HMS_RE = re.compile(r"([0-9]{2}):([0-9]{2}):([0-9]{2})")
SKIP_RE = re.compile(r"[0-9]+")


class ForemanError(Exception):
    """Base error for foreman."""


class ConfigError(ForemanError):
    """Settings or job file validation error."""


class RequestError(ForemanError):
    """A request to the job backend did not succeed."""


class TransportError(RequestError):
    """Non-2xx reply, connection failure or timeout."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ApplicationError(RequestError):
    """The backend answered but reported failure."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("foreman")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()

Alert = Callable[..., None]
Listener = Callable[[Dict[str, Any]], Any]


def require_yaml_dependency() -> None:
    if yaml is None:
        raise ForemanError("Missing required dependency: PyYAML. Install with: pip install -e .")


def require_croniter_dependency() -> None:
    if croniter is None:
        raise ForemanError("Missing required dependency: croniter. Install with: pip install -e .")


def is_valid_date(day: int, month: int, year: int) -> bool:
    if year < MIN_YEAR or year > MAX_YEAR or month < 1 or month > 12:
        return False
    return 1 <= day <= calendar.monthrange(year, month)[1]


def is_valid_time(hour: int, minute: int, second: int) -> bool:
    return 0 <= hour <= 23 and 0 <= minute <= 59 and 0 <= second <= 59


def _datetime_fields(text: str, now: Optional[datetime]) -> Optional[Tuple[int, ...]]:
    match = DMY_HMS_RE.fullmatch(text)
    if match:
        day, month, year, hour, minute, second = (int(group) for group in match.groups())
        return year, month, day, hour, minute, second
    match = YMD_HMS_RE.fullmatch(text)
    if match:
        return tuple(int(group) for group in match.groups())
    match = DMY_RE.fullmatch(text)
    if match:
        day, month, year = (int(group) for group in match.groups())
        return year, month, day, 0, 0, 0
    match = YMD_RE.fullmatch(text)
    if match:
        year, month, day = (int(group) for group in match.groups())
        return year, month, day, 0, 0, 0
    match = HMS_RE.fullmatch(text)
    if match:
        current = now or datetime.now()
        hour, minute, second = (int(group) for group in match.groups())
        return current.year, current.month, current.day, hour, minute, second
    return None


def parse_datetime(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse operator-entered date/time text.

    Accepted forms, tried in order (the first matching form decides):
      DD-MM-YYYY HH:MM:SS
      YYYY-MM-DD HH:MM:SS  ('-', ':' and the space are optional)
      DD-MM-YYYY           (midnight)
      YYYY-MM-DD           ('-' optional, midnight)
      HH:MM:SS             (date taken from `now`, default today)

    Out-of-range calendar or clock fields give None rather than a clamped value.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None
    fields = _datetime_fields(value.strip(), now)
    if fields is None:
        return None
    year, month, day, hour, minute, second = fields
    if not is_valid_date(day, month, year) or not is_valid_time(hour, minute, second):
        return None
    return datetime(year, month, day, hour, minute, second)


def format_datetime(value: datetime) -> str:
    return value.strftime(DATETIME_FORMAT)


def next_fire_times(expression: str, count: int, now: Optional[datetime] = None) -> List[datetime]:
    require_croniter_dependency()
    iterator = croniter(expression, now or datetime.now())
    return [iterator.get_next(datetime) for _ in range(count)]


def is_valid_crontab(expression: str) -> bool:
    require_croniter_dependency()
    return bool(croniter.is_valid(expression))


@dataclass(frozen=True)
class StreamSettings:
    reconnect_delay_ms: int


@dataclass(frozen=True)
class ObserverSettings:
    min_delay_ms: int
    dense_threshold: int


@dataclass(frozen=True)
class Settings:
    endpoint: str
    request_timeout_ms: int
    stream: StreamSettings
    observer: ObserverSettings

    @staticmethod
    def default() -> "Settings":
        return Settings(
            endpoint=DEFAULT_ENDPOINT,
            request_timeout_ms=DEFAULT_REQUEST_TIMEOUT_MS,
            stream=StreamSettings(reconnect_delay_ms=DEFAULT_RECONNECT_DELAY_MS),
            observer=ObserverSettings(
                min_delay_ms=DEFAULT_OBSERVER_MIN_DELAY_MS,
                dense_threshold=DEFAULT_OBSERVER_DENSE_THRESHOLD,
            ),
        )


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: Set[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def load_yaml_file(path: Path) -> Dict[str, Any]:
    require_yaml_dependency()
    if not path.exists():
        raise ConfigError(f"Error: File not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level content of {path} must be a mapping.")
    return payload


def parse_settings(raw: Any) -> Settings:
    payload = ensure_mapping(raw, "settings", {"endpoint", "request_timeout_ms", "stream", "observer"})

    endpoint = ensure_str(payload.get("endpoint", DEFAULT_ENDPOINT), "endpoint")
    if not (endpoint.startswith("http://") or endpoint.startswith("https://")):
        raise ConfigError("Error: endpoint must be an HTTP URL.")
    request_timeout_ms = ensure_int(
        payload.get("request_timeout_ms"), "request_timeout_ms", DEFAULT_REQUEST_TIMEOUT_MS, 1
    )

    stream_raw = ensure_mapping(payload.get("stream"), "stream", {"reconnect_delay_ms"})
    reconnect_delay_ms = ensure_int(
        stream_raw.get("reconnect_delay_ms"),
        "stream.reconnect_delay_ms",
        DEFAULT_RECONNECT_DELAY_MS,
        1,
    )

    observer_raw = ensure_mapping(payload.get("observer"), "observer", {"min_delay_ms", "dense_threshold"})
    min_delay_ms = ensure_int(
        observer_raw.get("min_delay_ms"),
        "observer.min_delay_ms",
        DEFAULT_OBSERVER_MIN_DELAY_MS,
        0,
    )
    dense_threshold = ensure_int(
        observer_raw.get("dense_threshold"),
        "observer.dense_threshold",
        DEFAULT_OBSERVER_DENSE_THRESHOLD,
        1,
    )

    return Settings(
        endpoint=endpoint,
        request_timeout_ms=request_timeout_ms,
        stream=StreamSettings(reconnect_delay_ms=reconnect_delay_ms),
        observer=ObserverSettings(min_delay_ms=min_delay_ms, dense_threshold=dense_threshold),
    )


def load_settings(config_path: Path) -> Settings:
    if not config_path.exists():
        logger.info("No settings file at %s; using defaults.", config_path)
        return Settings.default()
    return parse_settings(load_yaml_file(config_path))


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: str
    required: bool = False
    default: Any = None
    has_default: bool = False
    options: Optional[Tuple[Any, ...]] = None
    label: Optional[str] = None

    @staticmethod
    def from_payload(raw: Any, field_path: str) -> "ParamSpec":
        if not isinstance(raw, dict):
            raise ConfigError(f"Error: {field_path} must be a mapping.")
        name = ensure_str(raw.get("name"), f"{field_path}.name")
        param_type = raw.get("type") or "text"
        if param_type not in VALID_PARAM_TYPES:
            logger.warning('Unknown parameter type "%s" at %s; treating as text.', param_type, field_path)
        options = raw.get("options")
        return ParamSpec(
            name=name,
            type=param_type,
            required=bool(raw.get("required")),
            default=raw.get("default"),
            has_default="default" in raw,
            options=tuple(options) if isinstance(options, list) else None,
            label=raw.get("label"),
        )


@dataclass(frozen=True)
class NodeConstraints:
    available: Tuple[str, ...]
    min: int = 0
    max: int = 0
    default: FrozenSet[str] = frozenset()

    @staticmethod
    def from_payload(raw: Any, field_path: str) -> "NodeConstraints":
        if raw is None:
            return NodeConstraints(available=())
        if not isinstance(raw, dict):
            raise ConfigError(f"Error: {field_path} must be a mapping.")
        available = raw.get("available") or []
        if not isinstance(available, list):
            raise ConfigError(f"Error: {field_path}.available must be a list.")
        default_raw = raw.get("default") or []
        # Either a list of node names or a {node: bool} mapping.
        if isinstance(default_raw, dict):
            default = frozenset(node for node, flag in default_raw.items() if flag)
        elif isinstance(default_raw, list):
            default = frozenset(default_raw)
        else:
            raise ConfigError(f"Error: {field_path}.default must be a list or mapping.")
        return NodeConstraints(
            available=tuple(available),
            min=ensure_int(raw.get("min"), f"{field_path}.min", 0, 0),
            max=ensure_int(raw.get("max"), f"{field_path}.max", 0, 0),
            default=default,
        )


@dataclass(frozen=True)
class JobTypeDescriptor:
    type: str
    group: str
    nodes: NodeConstraints
    params: Tuple[ParamSpec, ...] = ()
    props: Tuple[ParamSpec, ...] = ()
    delay_restricted: Dict[str, bool] = field(default_factory=dict, hash=False)
    label: Optional[str] = None

    def is_delay_restricted(self, action: str) -> bool:
        return bool(self.delay_restricted.get(action))


@dataclass
class ConsoleConfig:
    jobs: List[JobTypeDescriptor]
    props: List[ParamSpec]
    jobs_by_type: Dict[str, JobTypeDescriptor]
    jobs_by_group: Dict[str, List[JobTypeDescriptor]]
    groups: List[str]
    delay_restricted: Dict[str, bool]
    auth: Dict[str, str]
    error: str = ""

    @property
    def is_loaded(self) -> bool:
        return bool(self.auth.get("user"))

    def is_delay_restricted(self, action: str) -> bool:
        return bool(self.delay_restricted.get(action))


def _parse_param_list(raw: Any, field_path: str) -> List[ParamSpec]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"Error: {field_path} must be a list.")
    return [ParamSpec.from_payload(item, f"{field_path}[{idx}]") for idx, item in enumerate(raw)]


def _parse_job_type(raw: Any, field_path: str, global_props: List[ParamSpec]) -> JobTypeDescriptor:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    restricted = raw.get("delayRestricted") or {}
    if not isinstance(restricted, dict):
        raise ConfigError(f"Error: {field_path}.delayRestricted must be a mapping.")
    props = _parse_param_list(raw["props"], f"{field_path}.props") if "props" in raw else list(global_props)
    return JobTypeDescriptor(
        type=ensure_str(raw.get("type"), f"{field_path}.type"),
        group=raw.get("group") or "",
        nodes=NodeConstraints.from_payload(raw.get("nodes"), f"{field_path}.nodes"),
        params=tuple(_parse_param_list(raw.get("params"), f"{field_path}.params")),
        props=tuple(props),
        delay_restricted={key: bool(value) for key, value in restricted.items()},
        label=raw.get("label"),
    )


def build_config(payload: Any, error: str = "") -> ConsoleConfig:
    """Index the server `config` payload by job type and by group."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ConfigError("Error: config payload must be a mapping.")

    props = _parse_param_list(payload.get("props"), "props")
    jobs_raw = payload.get("jobs") or []
    if not isinstance(jobs_raw, list):
        raise ConfigError("Error: jobs must be a list.")

    jobs: List[JobTypeDescriptor] = []
    jobs_by_type: Dict[str, JobTypeDescriptor] = {}
    jobs_by_group: Dict[str, List[JobTypeDescriptor]] = {"": []}
    groups: List[str] = []
    for idx, job_raw in enumerate(jobs_raw):
        job = _parse_job_type(job_raw, f"jobs[{idx}]", props)
        if job.group not in groups:
            groups.append(job.group)
            jobs_by_group.setdefault(job.group, [])
        jobs.append(job)
        jobs_by_type[job.type] = job
        jobs_by_group[job.group].append(job)

    auth_raw = payload.get("auth") or {}
    if not isinstance(auth_raw, dict):
        raise ConfigError("Error: auth must be a mapping.")
    restricted_raw = payload.get("delayRestricted") or {}
    if not isinstance(restricted_raw, dict):
        raise ConfigError("Error: delayRestricted must be a mapping.")

    return ConsoleConfig(
        jobs=jobs,
        props=props,
        jobs_by_type=jobs_by_type,
        jobs_by_group=jobs_by_group,
        groups=groups,
        delay_restricted={key: bool(value) for key, value in restricted_raw.items()},
        auth={"user": str(auth_raw.get("user") or ""), "pass": str(auth_raw.get("pass") or "")},
        error=error,
    )


def empty_config(error: str = "") -> ConsoleConfig:
    return build_config({}, error=error)


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _is_blank_field(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return value == ""
    return type(value) in (int, float) and value == 0


def validate_nodes(proto: JobTypeDescriptor, nodes: Set[str]) -> Tuple[bool, str]:
    count = len(nodes)
    min_nodes = proto.nodes.min
    max_nodes = proto.nodes.max
    if count == 0:
        return False, "Choose at least one node"
    if min_nodes > 0 and count < min_nodes:
        return False, f"Too few nodes (minimum {min_nodes} required)"
    if max_nodes > 0 and count > max_nodes:
        return False, f"Too many nodes (maximum {max_nodes} allowed)"
    return True, ""


def validate_params(specs: Tuple[ParamSpec, ...], values: Dict[str, Any]) -> Tuple[bool, Dict[str, str]]:
    errors: Dict[str, str] = {}
    for spec in specs:
        value = values.get(spec.name)
        if spec.type != PARAM_TYPE_FLAG and spec.required and _is_missing(value):
            errors[spec.name] = "Parameter is required"
            continue
        if spec.type == PARAM_TYPE_DATETIME and not _is_missing(value) and parse_datetime(value) is None:
            errors[spec.name] = "Incorrect datetime"
    return not errors, errors


def default_param_values(specs: Tuple[ParamSpec, ...]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for spec in specs:
        if spec.has_default:
            values[spec.name] = bool(spec.default) if spec.type == PARAM_TYPE_FLAG else spec.default
    return values


class JobDraft:
    """One job being edited. Validity is recomputed after every change."""

    def __init__(
        self,
        proto: Optional[JobTypeDescriptor] = None,
        nodes: Optional[Set[str]] = None,
        params: Optional[Dict[str, Any]] = None,
        props: Optional[Dict[str, Any]] = None,
        on_valid_changed: Optional[Callable[["JobDraft"], None]] = None,
    ) -> None:
        self.proto = proto
        self.nodes: Set[str] = set(nodes or ())
        self.params: Dict[str, Any] = dict(params or {})
        self.props: Dict[str, Any] = dict(props or {})
        self.is_valid = False
        self.on_valid_changed = on_valid_changed
        self._reset_validation()

    @classmethod
    def fresh(
        cls,
        proto: Optional[JobTypeDescriptor] = None,
        on_valid_changed: Optional[Callable[["JobDraft"], None]] = None,
    ) -> "JobDraft":
        draft = cls(proto=proto, on_valid_changed=on_valid_changed)
        draft.reset()
        return draft

    def _reset_validation(self) -> None:
        self.nodes_valid = False
        self.nodes_error = ""
        self.param_errors: Dict[str, str] = {}
        self.prop_errors: Dict[str, str] = {}

    def reset(self) -> bool:
        """Drop the current values and inject the job type defaults."""
        self._reset_validation()
        self.nodes = set()
        self.params = {}
        self.props = {}
        if self.proto is not None:
            self.nodes = set(self.proto.nodes.default)
            self.params = default_param_values(self.proto.params)
            self.props = default_param_values(self.proto.props)
        return self.validate()

    def set_proto(self, proto: Optional[JobTypeDescriptor]) -> bool:
        self.proto = proto
        return self.reset()

    def select_node(self, node: str, selected: bool = True) -> bool:
        if selected:
            self.nodes.add(node)
        else:
            self.nodes.discard(node)
        return self.validate()

    def set_param(self, name: str, value: Any) -> bool:
        self.params[name] = value
        return self.validate()

    def set_prop(self, name: str, value: Any) -> bool:
        self.props[name] = value
        return self.validate()

    def validate(self) -> bool:
        if self.proto is None:
            is_valid = False
        else:
            self.nodes_valid, self.nodes_error = validate_nodes(self.proto, self.nodes)
            params_valid, self.param_errors = validate_params(self.proto.params, self.params)
            props_valid, self.prop_errors = validate_params(self.proto.props, self.props)
            is_valid = self.nodes_valid and params_valid and props_valid

        if self.is_valid != is_valid:
            self.is_valid = is_valid
            if self.on_valid_changed is not None:
                self.on_valid_changed(self)
        return is_valid

    def errors(self) -> List[str]:
        if self.proto is None:
            return ["Job type is not chosen"]
        out: List[str] = []
        if self.nodes_error:
            out.append(f"nodes: {self.nodes_error}")
        out.extend(f"params.{name}: {message}" for name, message in self.param_errors.items())
        out.extend(f"props.{name}: {message}" for name, message in self.prop_errors.items())
        return out

    def to_request(self) -> Optional[Dict[str, Any]]:
        if self.proto is None:
            return None
        available = [node for node in self.proto.nodes.available if node in self.nodes]
        extra = sorted(node for node in self.nodes if node not in self.proto.nodes.available)
        return {
            "type": self.proto.type,
            "nodes": available + extra,
            "params": {name: value for name, value in self.params.items() if not _is_blank_field(value)},
            "props": {name: value for name, value in self.props.items() if not _is_blank_field(value)},
        }


class JobList:
    """Ordered drafts with an aggregate validity flag."""

    def __init__(self, on_changed: Optional[Callable[[List[JobDraft]], None]] = None) -> None:
        self.drafts: List[JobDraft] = []
        self.is_valid = False
        self.on_changed = on_changed

    def _adopt(self, draft: JobDraft) -> JobDraft:
        draft.on_valid_changed = self._draft_valid_changed
        return draft

    def _draft_valid_changed(self, _: JobDraft) -> None:
        self.validate()

    def _changed(self) -> None:
        if self.on_changed is not None:
            self.on_changed(self.drafts)

    def validate(self) -> bool:
        self.is_valid = all(draft.is_valid for draft in self.drafts)
        return self.is_valid

    def add(self, proto: Optional[JobTypeDescriptor] = None) -> JobDraft:
        draft = self._adopt(JobDraft.fresh(proto))
        self.drafts.append(draft)
        self.validate()
        self._changed()
        return draft

    def remove(self, index: int) -> bool:
        if len(self.drafts) <= 1 or not 0 <= index < len(self.drafts):
            return False
        del self.drafts[index]
        self.validate()
        self._changed()
        return True

    def set_proto(self, index: int, proto: Optional[JobTypeDescriptor]) -> JobDraft:
        draft = self.drafts[index]
        draft.set_proto(proto)
        self.validate()
        self._changed()
        return draft

    def replace(self, drafts: List[JobDraft]) -> None:
        self.drafts = [self._adopt(draft) for draft in drafts]
        self.validate()
        self._changed()

    def reset(self) -> None:
        self.drafts = []
        self.add()

    def requests(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for draft in self.drafts:
            request = draft.to_request()
            if request is not None:
                out.append(request)
        return out


class DelayForm:
    """
    Schedule of the job bundle being submitted.

    Time mode holds one optional date; crontab mode holds an expression with
    optional skip count and pause flag. An empty schedule means immediate
    creation and is only acceptable for a fresh submission.
    """

    def __init__(self, config: ConsoleConfig) -> None:
        self.config = config
        self.id: Any = None
        self.summary: Optional[str] = None
        self.update_count: Optional[int] = None
        self.time: Optional[str] = None
        self.crontab: Optional[str] = None
        self.skip: Any = None
        self.pause = False
        self.date: Optional[datetime] = None
        self.date_error = False
        self.crontab_valid = True
        self.skip_valid = True
        self.action = ACTION_CREATE
        self.mode = SCHEDULE_MODE_TIME
        self.is_valid = True
        self.is_restricted = False
        self.label = "Create"
        self.reset()

    @property
    def is_immediate(self) -> bool:
        return self.time is None and _is_missing(self.crontab)

    def reset(self) -> None:
        self.id = None
        self.summary = None
        self.update_count = None
        self.time = None
        self.crontab = None
        self.skip = None
        self.pause = False
        self._init()

    def load(self, delay: Dict[str, Any]) -> None:
        self.id = delay.get("id")
        self.summary = delay.get("summary")
        self.update_count = delay.get("update_count")
        self.time = delay.get("time")
        self.crontab = delay.get("crontab")
        self.skip = delay.get("skip")
        self.pause = bool(delay.get("pause"))
        self._init()

    def _init(self) -> None:
        self.action = ACTION_UPDATE if self.id is not None else ACTION_CREATE
        self.is_restricted = self.config.is_delay_restricted(self.action)
        self.is_valid = True
        mode = SCHEDULE_MODE_CRONTAB if self.crontab is not None else SCHEDULE_MODE_TIME
        self.switch_mode(mode)

    def switch_mode(self, mode: str) -> None:
        if mode not in (SCHEDULE_MODE_TIME, SCHEDULE_MODE_CRONTAB):
            raise ValueError(f"Unknown schedule mode: {mode}")
        self.mode = mode
        if mode == SCHEDULE_MODE_TIME:
            self.crontab = None
            self.skip = None
            self.pause = False
            self.crontab_valid = True
            self.skip_valid = True
            self.set_date(self.time)
        else:
            self.time = None
            self.date = None
            self.date_error = False
            self._validate_crontab()

    def set_date(self, value: Any) -> bool:
        self.date_error = False
        if value is None or value == "":
            self.date = None
        else:
            self.date = parse_datetime(value)
            self.date_error = self.date is None

        if self.date is not None:
            self.time = format_datetime(self.date)
            self.is_valid = True
        else:
            self.time = None
            self.is_valid = not self.date_error and self.action == ACTION_CREATE
        self._update_label()
        return self.is_valid

    def set_crontab(self, expression: Optional[str]) -> bool:
        self.crontab = expression.strip() if isinstance(expression, str) else expression
        return self._validate_crontab()

    def set_skip(self, skip: Any) -> bool:
        self.skip = skip
        return self._validate_crontab()

    def set_pause(self, pause: bool) -> None:
        self.pause = bool(pause)

    def _validate_crontab(self) -> bool:
        if _is_missing(self.crontab):
            self.crontab_valid = self.action == ACTION_CREATE
        else:
            self.crontab_valid = is_valid_crontab(self.crontab)
        self.skip_valid = _is_missing(self.skip) or (
            not isinstance(self.skip, bool) and SKIP_RE.fullmatch(str(self.skip)) is not None
        )
        self.is_valid = self.crontab_valid and self.skip_valid
        self._update_label()
        return self.is_valid

    def _update_label(self) -> None:
        self.label = "Create" if self.is_immediate and self.action == ACTION_CREATE else "Delay"

    def jobs_changed(self, drafts: List[JobDraft]) -> bool:
        restricted = self.config.is_delay_restricted(self.action)
        if not restricted:
            restricted = any(
                draft.proto is not None and draft.proto.is_delay_restricted(self.action) for draft in drafts
            )
        self.is_restricted = restricted
        return restricted

    def preview(self, count: int = DEFAULT_PREVIEW_COUNT, now: Optional[datetime] = None) -> List[datetime]:
        if self.mode != SCHEDULE_MODE_CRONTAB or _is_missing(self.crontab) or not self.crontab_valid:
            return []
        return next_fire_times(self.crontab, count, now)

    def build(self, jobs: List[Dict[str, Any]], summary: Optional[str] = None) -> Dict[str, Any]:
        if self.is_immediate:
            return {}
        fallback = jobs[0]["type"] if jobs else ""
        spec: Dict[str, Any] = {"summary": summary or self.summary or fallback}
        if self.time is not None:
            spec["time"] = self.time
        else:
            spec["crontab"] = self.crontab
            if self.skip:
                spec["skip"] = int(self.skip)
            if self.pause:
                spec["pause"] = 1
        if self.id is not None:
            spec["id"] = self.id
        return spec


def server_error(data: Any, status: int) -> str:
    if isinstance(data, dict):
        if data.get("message"):
            return str(data["message"])
        if data.get("error"):
            return str(data["error"])
        if data.get("exception"):
            return f"exception arised '{data['exception']}'"
    if isinstance(data, str) and data != "":
        return f"{data} ({status})"
    return f"unknown error ({status})"


def _acknowledge(data: Any) -> None:
    if isinstance(data, dict) and data.get("success") == 1:
        return
    message = data.get("error") if isinstance(data, dict) else None
    raise ApplicationError(str(message) if message else "unknown error")


class JobServiceClient:
    """Unary requests to the job backend over one shared aiohttp session."""

    def __init__(
        self,
        endpoint: str,
        timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/") + "/"
        self.timeout_ms = timeout_ms
        self._session = session
        self._owns_session = session is None

    def url(self, path: str) -> str:
        return self.endpoint + path.lstrip("/")

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=max(0.1, self.timeout_ms / 1000.0))
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        session = self._ensure_session()
        url = self.url(path)
        try:
            async with session.request(method, url, json=payload) as response:
                text = await response.text()
                try:
                    data: Any = json.loads(text) if text else None
                except ValueError:
                    data = text
                if not 200 <= response.status < 300:
                    raise TransportError(server_error(data, response.status), status=response.status)
                return data
        except aiohttp.ClientError as exc:
            logger.warning("Request %s %s failed: %s", method, url, str(exc))
            raise TransportError(str(exc) or exc.__class__.__name__) from exc
        except asyncio.TimeoutError as exc:
            logger.warning("Request %s %s timed out.", method, url)
            raise TransportError(f"request timed out ({method} {path})") from exc

    async def load_config(self) -> Dict[str, Any]:
        data = await self._request("GET", "config")
        if not isinstance(data, dict):
            raise ApplicationError("config reply is not an object")
        return data

    async def create(self, jobs: List[Dict[str, Any]]) -> None:
        _acknowledge(await self._request("POST", "create", jobs))

    async def delay(self, spec: Dict[str, Any], jobs: List[Dict[str, Any]], update_count: int) -> None:
        payload = {"delay": spec, "jobs": jobs, "updateCount": update_count}
        _acknowledge(await self._request("POST", "delay", payload))

    async def delete_delayed_work(self, work_filter: Dict[str, Any], update_count: int) -> None:
        payload = {"filter": work_filter, "updateCount": update_count}
        _acknowledge(await self._request("POST", "delayed_works/delete", payload))

    async def get_delayed_works(self, work_filter: Optional[Dict[str, Any]] = None) -> None:
        _acknowledge(await self._request("POST", "delayed_works/get", {"filter": work_filter}))

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


def stream_url(endpoint: str, auth: Dict[str, str]) -> str:
    parts = urlsplit(endpoint)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/ws"
    query = "user={}&pass={}".format(
        quote(auth.get("user", ""), safe="!~*'()"),
        quote(auth.get("pass", ""), safe="!~*'()"),
    )
    return urlunsplit((scheme, parts.netloc, path, query, ""))


class StreamHandle:
    """One persistent websocket; reconnects until closed."""

    def __init__(self, url: str, client: "StreamClient", reconnect_delay: float) -> None:
        self.url = url
        self.safe_url = url.split("?", 1)[0]
        self._client = client
        self._reconnect_delay = reconnect_delay
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._closed = False
        self.connect_count = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def wait_connected(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def dispatch(self, raw: Any) -> bool:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Dropping malformed stream message: %s", str(exc))
            return False
        if not isinstance(event, dict):
            logger.warning("Dropping stream message that is not an object.")
            return False
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Stream listener failed on %s event.", event.get("event"))
        return True

    async def _run(self) -> None:
        while not self._closed:
            try:
                async with self._client.session().ws_connect(
                    self.url, heartbeat=STREAM_HEARTBEAT_SECONDS
                ) as ws:
                    self.connect_count += 1
                    self._connected.set()
                    logger.info("Stream connected: %s (attempt=%s)", self.safe_url, self.connect_count)
                    async for message in ws:
                        if message.type == aiohttp.WSMsgType.TEXT:
                            self.dispatch(message.data)
                        elif message.type == aiohttp.WSMsgType.BINARY:
                            self.dispatch(message.data.decode("utf-8", errors="replace"))
                        elif message.type == aiohttp.WSMsgType.ERROR:
                            logger.warning("Stream error: %s", str(ws.exception()))
                            break
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                logger.warning("Stream connection to %s failed: %s", self.safe_url, str(exc))
            finally:
                self._connected.clear()
            if self._closed:
                break
            logger.info("Stream reconnecting to %s in %.2fs", self.safe_url, self._reconnect_delay)
            await asyncio.sleep(self._reconnect_delay)

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None


class StreamClient:
    """Keeps exactly one stream handle per credential pair."""

    def __init__(self, endpoint: str, reconnect_delay_ms: int = DEFAULT_RECONNECT_DELAY_MS) -> None:
        self.endpoint = endpoint
        self.reconnect_delay = reconnect_delay_ms / 1000.0
        self._handles: Dict[Tuple[str, str], StreamHandle] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # No total timeout: the websocket is expected to live for the whole session.
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
        return self._session

    def connect(self, auth: Dict[str, str]) -> StreamHandle:
        key = (auth.get("user", ""), auth.get("pass", ""))
        handle = self._handles.get(key)
        if handle is None:
            handle = StreamHandle(stream_url(self.endpoint, auth), self, self.reconnect_delay)
            self._handles[key] = handle
            handle.start()
        return handle

    async def close(self) -> None:
        for handle in list(self._handles.values()):
            await handle.close()
        self._handles.clear()
        if self._session is not None and not self._session.closed:
            await self._session.close()


class EventKind(str, Enum):
    CREATE = "create"
    PROGRESS = "progress"
    REDIRECT = "redirect"
    FINISH = "finish"
    CLEAN = "clean"
    CREATE_JOBSET = "createJobSet"
    PROGRESS_JOBSET = "progressJobSet"
    FINISH_JOBSET = "finishJobSet"
    CLEAN_JOBSET = "cleanJobSet"
    CREATE_DELAYED_WORK = "createDelayedWork"
    UPDATE_DELAYED_WORK = "updateDelayedWork"
    PROCESS_DELAYED_WORK = "processDelayedWork"
    DELETE_DELAYED_WORK = "deleteDelayedWork"
    GET_DELAYED_WORKS = "getDelayedWorks"
    STATUS = "status"

    @classmethod
    def parse(cls, value: Any) -> Optional["EventKind"]:
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


JOB_EVENTS = frozenset(
    {EventKind.CREATE, EventKind.PROGRESS, EventKind.REDIRECT, EventKind.FINISH, EventKind.CLEAN}
)
PRIMARY_EVENTS = frozenset(
    {
        EventKind.CREATE,
        EventKind.CREATE_JOBSET,
        EventKind.CREATE_DELAYED_WORK,
        EventKind.UPDATE_DELAYED_WORK,
    }
)
INFO_EVENTS = frozenset(
    {
        EventKind.PROGRESS,
        EventKind.REDIRECT,
        EventKind.PROGRESS_JOBSET,
        EventKind.PROCESS_DELAYED_WORK,
    }
)
DANGER_EVENTS = frozenset({EventKind.CLEAN, EventKind.CLEAN_JOBSET, EventKind.DELETE_DELAYED_WORK})
HIDDEN_EVENTS = frozenset({EventKind.GET_DELAYED_WORKS, EventKind.STATUS})
DELAYED_WORK_UPDATE_EVENTS = frozenset(
    {
        EventKind.CREATE_DELAYED_WORK,
        EventKind.UPDATE_DELAYED_WORK,
        EventKind.PROCESS_DELAYED_WORK,
        EventKind.DELETE_DELAYED_WORK,
    }
)


def classify_event(kind: EventKind, event: Dict[str, Any]) -> Optional[str]:
    """Display class for an event; None for kinds the observer does not show."""
    if kind is EventKind.FINISH:
        return CLASS_SUCCESS if event.get("success") else CLASS_DANGER
    if kind is EventKind.FINISH_JOBSET:
        return CLASS_SUCCESS
    if kind in PRIMARY_EVENTS:
        return CLASS_PRIMARY
    if kind in INFO_EVENTS:
        return CLASS_INFO
    if kind in DANGER_EVENTS:
        return CLASS_DANGER
    if kind in HIDDEN_EVENTS:
        return None
    raise ValueError(f"Unclassified event kind: {kind}")


@dataclass
class ObserverEvent:
    index: int
    kind: EventKind
    css_class: str
    payload: Dict[str, Any]
    job: Optional[JobTypeDescriptor] = None


class Observer:
    """Reveals stream events one at a time, no faster than `min_delay_ms` apart."""

    def __init__(
        self,
        config: ConsoleConfig,
        min_delay_ms: int = DEFAULT_OBSERVER_MIN_DELAY_MS,
        dense_threshold: int = DEFAULT_OBSERVER_DENSE_THRESHOLD,
        on_reveal: Optional[Callable[[ObserverEvent], None]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.config = config
        self.min_delay = min_delay_ms / 1000.0
        self.dense_threshold = dense_threshold
        self.on_reveal = on_reveal
        self._loop = loop
        self.pending: Deque[ObserverEvent] = deque()
        self.visible: List[ObserverEvent] = []
        self.next_index = 0
        self.is_hidden = True
        self.is_collapsed = True
        self.is_dense = False
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    def receive(self, raw: Dict[str, Any]) -> Optional[ObserverEvent]:
        kind = EventKind.parse(raw.get("event"))
        if kind is None:
            return None
        css_class = classify_event(kind, raw)
        if css_class is None:
            return None

        job = self.config.jobs_by_type.get(raw.get("type")) if kind in JOB_EVENTS else None
        event = ObserverEvent(index=self.next_index, kind=kind, css_class=css_class, payload=raw, job=job)
        self.next_index += 1
        self.pending.append(event)
        if self._timer is None:
            self._deliver()
        return event

    def _deliver(self) -> None:
        self._timer = None
        if not self.pending:
            return

        event = self.pending.popleft()
        was_empty = not self.visible
        self.visible.append(event)
        self.is_hidden = False
        if was_empty:
            self.is_collapsed = False
        if len(self.visible) >= self.dense_threshold:
            self.is_dense = True

        loop = self._loop or asyncio.get_running_loop()
        self._timer = loop.call_later(self.min_delay, self._deliver)
        if self.on_reveal is not None:
            self.on_reveal(event)

    def collapse(self) -> None:
        self.is_collapsed = True

    def expand(self) -> None:
        self.is_collapsed = False

    def clear(self) -> None:
        self.visible.clear()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


@dataclass
class DelayedWorkRecord:
    id: Any
    summary: str
    jobs: List[Dict[str, Any]]
    update_count: int = 0
    time: Optional[str] = None
    crontab: Optional[str] = None
    skip: Optional[int] = None
    pause: bool = False
    delay_restricted: Dict[str, bool] = field(default_factory=dict)

    @staticmethod
    def from_payload(raw: Dict[str, Any]) -> "DelayedWorkRecord":
        jobs = raw.get("jobs") or []
        return DelayedWorkRecord(
            id=raw["id"],
            summary=str(raw.get("summary") or ""),
            jobs=[job for job in jobs if isinstance(job, dict)] if isinstance(jobs, list) else [],
            update_count=int(raw.get("update") or 0),
            time=raw.get("time"),
            crontab=raw.get("crontab"),
            skip=raw.get("skip"),
            pause=bool(raw.get("pause")),
        )


@dataclass
class EditableWork:
    delay: Dict[str, Any]
    drafts: List[JobDraft]


def resolve_job_entry(entry: Dict[str, Any]) -> Tuple[Optional[Dict[str, Any]], List[str]]:
    """Representative job and node list of a persisted entry (flat or job group)."""
    sub_jobs = entry.get("jobs")
    if sub_jobs is not None:
        if not isinstance(sub_jobs, list) or not sub_jobs or not isinstance(sub_jobs[0], dict):
            return None, []
        nodes = [job["node"] for job in sub_jobs if isinstance(job, dict) and job.get("node") is not None]
        return sub_jobs[0], nodes
    node = entry.get("node")
    return entry, [node] if node is not None else []


def aggregate_restrictions(
    jobs: List[Dict[str, Any]], jobs_by_type: Dict[str, JobTypeDescriptor]
) -> Dict[str, bool]:
    restricted: Dict[str, bool] = {}
    for entry in jobs:
        job, _ = resolve_job_entry(entry)
        if job is None:
            continue
        proto = jobs_by_type.get(job.get("type"))
        if proto is None:
            continue
        for action in (ACTION_UPDATE, ACTION_DELETE):
            if proto.is_delay_restricted(action):
                restricted[action] = True
    return restricted


def _copy_declared(specs: Tuple[ParamSpec, ...], source: Any) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if not isinstance(source, dict):
        return values
    for spec in specs:
        if spec.name in source:
            value = source[spec.name]
            values[spec.name] = bool(value) if spec.type == PARAM_TYPE_FLAG else value
    return values


class DelayedWorkSynchronizer:
    """Client-side cache of delayed works, refreshed by stream events."""

    def __init__(
        self,
        config: ConsoleConfig,
        transport: JobServiceClient,
        error: Callable[[str], None],
    ) -> None:
        self.config = config
        self.transport = transport
        self.error = error
        self.records_by_id: Dict[Any, DelayedWorkRecord] = {}
        self.works: List[DelayedWorkRecord] = []
        self.load_enabled = False
        self.is_loaded = False
        self._tasks: Set[asyncio.Future] = set()

    def enable_loading(self) -> bool:
        if self.load_enabled:
            return False
        self.load_enabled = True
        if not self.config.is_delay_restricted(ACTION_GET):
            self.refetch()
        return True

    def refetch(self) -> Optional[asyncio.Future]:
        if not self.load_enabled:
            return None
        logger.info("Requesting delayed works refresh.")
        task = asyncio.ensure_future(self._fetch())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fetch(self) -> None:
        try:
            await self.transport.get_delayed_works(None)
        except RequestError as exc:
            self.error(str(exc))

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def on_event(self, event: Dict[str, Any]) -> None:
        kind = EventKind.parse(event.get("event"))
        if kind is None:
            return
        if kind in DELAYED_WORK_UPDATE_EVENTS:
            self.refetch()
        elif kind is EventKind.GET_DELAYED_WORKS:
            self.replace(event.get("works") or [])
        elif kind is EventKind.STATUS and not event.get("success"):
            self.error(str(event.get("message") or "unknown error"))
            self.refetch()

    def replace(self, works: Any) -> None:
        records: List[DelayedWorkRecord] = []
        for raw in works if isinstance(works, list) else []:
            if not isinstance(raw, dict) or raw.get("id") is None:
                logger.warning("Skipping malformed delayed work entry: %r", raw)
                continue
            try:
                record = DelayedWorkRecord.from_payload(raw)
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping delayed work %s: %s", raw.get("id"), str(exc))
                continue
            record.delay_restricted = aggregate_restrictions(record.jobs, self.config.jobs_by_type)
            records.append(record)
        self.works = records
        self.records_by_id = {record.id: record for record in records}
        self.is_loaded = True
        logger.info("Delayed works loaded: %s record(s).", len(records))

    def prepare_for_edit(self, work_id: Any) -> Optional[EditableWork]:
        record = self.records_by_id.get(work_id)
        if record is None:
            return None

        drafts: List[JobDraft] = []
        for entry in record.jobs:
            job, nodes = resolve_job_entry(entry)
            if job is None:
                continue
            proto = self.config.jobs_by_type.get(job.get("type"))
            if proto is None:
                continue
            if not nodes:
                continue
            selected = {node for node in nodes if node in proto.nodes.available}
            draft = JobDraft(
                proto=proto,
                nodes=selected,
                params=_copy_declared(proto.params, job.get("params")),
                props=_copy_declared(proto.props, job.get("props")),
            )
            draft.validate()
            drafts.append(draft)

        delay: Dict[str, Any] = {
            "id": record.id,
            "time": record.time,
            "summary": record.summary,
            "update_count": record.update_count,
        }
        if record.crontab is not None:
            delay["crontab"] = record.crontab
            delay["skip"] = record.skip
            delay["pause"] = record.pause
        return EditableWork(delay=delay, drafts=drafts)

    async def delete_record(self, work_id: Any) -> Optional[bool]:
        record = self.records_by_id.get(work_id)
        if record is None:
            return None
        try:
            await self.transport.delete_delayed_work({"id": work_id}, record.update_count)
        except RequestError as exc:
            self.error(str(exc))
            return False
        return True


class ReadinessGate:
    """Runs callbacks once their predicate holds; re-checked on `notify()`."""

    def __init__(self) -> None:
        self._waiters: List[Tuple[Callable[[], bool], Callable[[], None]]] = []

    def when_ready(self, predicate: Callable[[], bool], callback: Callable[[], None]) -> bool:
        if predicate():
            callback()
            return True
        self._waiters.append((predicate, callback))
        return False

    def notify(self) -> int:
        waiters, self._waiters = self._waiters, []
        fired = 0
        for predicate, callback in waiters:
            if predicate():
                callback()
                fired += 1
            else:
                self._waiters.append((predicate, callback))
        return fired


class ConsoleSession:
    REQUIRED_LISTENERS = 2

    def __init__(
        self,
        transport: JobServiceClient,
        stream_client: Optional[StreamClient],
        alert: Alert,
        settings: Optional[Settings] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.settings = settings or Settings.default()
        self.transport = transport
        self.stream_client = stream_client
        self.alert = alert
        self.config = empty_config()
        self.mode = MODE_JOBS
        self.listeners: List[Listener] = []
        self.stream: Optional[StreamHandle] = None
        self.gate = ReadinessGate()
        self.delay = DelayForm(self.config)
        self.jobs = JobList(on_changed=self.delay.jobs_changed)
        self.observer = Observer(
            self.config,
            min_delay_ms=self.settings.observer.min_delay_ms,
            dense_threshold=self.settings.observer.dense_threshold,
            loop=loop,
        )
        self.delayed_works = DelayedWorkSynchronizer(self.config, transport, self.error)
        self._in_flight = False

        if stream_client is not None:
            self.gate.when_ready(self._ready_to_observe, self._observe)
        self.add_event_listener(self.observer.receive)
        self.add_event_listener(self.delayed_works.on_event)
        self.jobs.reset()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def is_jobs_mode(self) -> bool:
        return self.mode == MODE_JOBS

    @property
    def is_delayed_works_mode(self) -> bool:
        return self.mode == MODE_DELAYED_WORKS

    def error(self, message: str) -> None:
        logger.error("Request failed: %s", message)
        text = message[:1].lower() + message[1:]
        self.alert(f"Error: {text}", "danger", True)

    async def load_config(self) -> ConsoleConfig:
        try:
            config = build_config(await self.transport.load_config())
        except (RequestError, ConfigError) as exc:
            config = empty_config(error=str(exc))
            logger.error("Failed to load configuration: %s", config.error)
            self.alert(f"Error: {config.error}", "danger", True)
        self.apply_config(config)
        return config

    def apply_config(self, config: ConsoleConfig) -> None:
        self.config = config
        self.delay.config = config
        self.observer.config = config
        self.delayed_works.config = config
        self.delay.reset()
        self.jobs.reset()
        self.gate.notify()

    def add_event_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)
        self.gate.notify()

    def _ready_to_observe(self) -> bool:
        return self.config.is_loaded and len(self.listeners) >= self.REQUIRED_LISTENERS

    def _observe(self) -> None:
        if self.stream_client is None:
            return
        self.stream = self.stream_client.connect(self.config.auth)
        self.stream.add_listener(self._dispatch)

    def _dispatch(self, event: Dict[str, Any]) -> None:
        for listener in list(self.listeners):
            listener(event)

    def go_to_jobs_mode(self) -> None:
        self.mode = MODE_JOBS

    def go_to_delayed_works_mode(self) -> None:
        self.mode = MODE_DELAYED_WORKS
        self.delayed_works.enable_loading()

    def edit_delayed_work(self, work_id: Any) -> bool:
        editable = self.delayed_works.prepare_for_edit(work_id)
        if editable is None:
            return False
        self.delay.load(editable.delay)
        self.jobs.replace(editable.drafts)
        self.go_to_jobs_mode()
        return True

    def reset(self) -> None:
        self.delay.reset()
        self.jobs.reset()

    def can_submit(self) -> bool:
        return self.jobs.is_valid and self.delay.is_valid and not self.delay.is_restricted

    async def submit(self, summary: Optional[str] = None) -> bool:
        if self._in_flight:
            logger.warning("Submission already in progress; ignoring repeated submit.")
            return False
        if not self.can_submit():
            logger.info("Submission blocked: jobs or schedule are invalid or restricted.")
            return False
        jobs = self.jobs.requests()
        if not jobs:
            return False
        spec = self.delay.build(jobs, summary)

        self._in_flight = True
        try:
            if spec:
                await self.transport.delay(spec, jobs, self.delay.update_count or 0)
                message = "Jobs delayed" if len(jobs) > 1 else "Job delayed"
            else:
                await self.transport.create(jobs)
                message = "Jobs created" if len(jobs) > 1 else "Job created"
        except RequestError as exc:
            self.error(str(exc))
            return False
        finally:
            self._in_flight = False

        logger.info("%s (%s job(s)).", message, len(jobs))
        self.alert(message, "success")
        self.reset()
        return True

    async def close(self) -> None:
        self.observer.stop()
        await self.delayed_works.drain()
        if self.stream_client is not None:
            await self.stream_client.close()
        await self.transport.close()


def console_alert(message: str, severity: str = "info", persist: bool = False) -> None:
    if severity == "danger":
        logger.error(message)
    elif severity == "warning":
        logger.warning(message)
    else:
        logger.info(message)


def format_event(event: ObserverEvent) -> str:
    payload = event.payload
    parts = [f"#{event.index}", event.kind.value]
    if event.job is not None:
        parts.append(event.job.label or event.job.type)
    elif payload.get("type"):
        parts.append(str(payload["type"]))
    for key in ("node", "id", "summary", "progress", "message"):
        if payload.get(key) not in (None, ""):
            parts.append(f"{key}={payload[key]}")
    if event.kind is EventKind.FINISH:
        parts.append("success" if payload.get("success") else "failed")
    return " ".join(parts)


def parse_job_file(payload: Dict[str, Any], config: ConsoleConfig) -> Tuple[List[JobDraft], Dict[str, Any]]:
    unknown = set(payload.keys()) - {"jobs", "delay"}
    if unknown:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown)}.")
    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    drafts: List[JobDraft] = []
    for idx, job_raw in enumerate(jobs_raw):
        path = f"jobs[{idx}]"
        job = ensure_mapping(job_raw, path, {"type", "nodes", "params", "props"})
        job_type = ensure_str(job.get("type"), f"{path}.type")
        proto = config.jobs_by_type.get(job_type)
        if proto is None:
            raise ConfigError(f'Error: Unknown job type "{job_type}" at {path}.type.')
        draft = JobDraft.fresh(proto)
        if "nodes" in job:
            if not isinstance(job["nodes"], list):
                raise ConfigError(f"Error: {path}.nodes must be a list.")
            draft.nodes = {str(node) for node in job["nodes"]}
        for key in ("params", "props"):
            values = job.get(key) or {}
            if not isinstance(values, dict):
                raise ConfigError(f"Error: {path}.{key} must be a mapping.")
            getattr(draft, key).update(values)
        draft.validate()
        drafts.append(draft)

    delay = ensure_mapping(payload.get("delay"), "delay", {"time", "crontab", "skip", "pause", "summary"})
    if "time" in delay and "crontab" in delay:
        raise ConfigError('Error: delay cannot mix "time" with "crontab".')
    return drafts, delay


def apply_delay_options(form: DelayForm, delay: Dict[str, Any]) -> None:
    if delay.get("crontab") is not None:
        form.switch_mode(SCHEDULE_MODE_CRONTAB)
        form.set_crontab(str(delay["crontab"]))
        form.set_skip(delay.get("skip"))
        form.set_pause(bool(delay.get("pause")))
    elif delay.get("time") is not None:
        form.set_date(str(delay["time"]))
    if delay.get("summary"):
        form.summary = str(delay["summary"])


def _print_draft_report(drafts: List[JobDraft]) -> int:
    invalid = 0
    for idx, draft in enumerate(drafts):
        name = draft.proto.type if draft.proto is not None else "(none)"
        status = "ok" if draft.is_valid else "INVALID"
        print(f"- job[{idx}] {name}: {status}")
        for message in draft.errors() if not draft.is_valid else []:
            print(f"    {message}")
        if not draft.is_valid:
            invalid += 1
    return invalid


def build_session(settings: Settings, observe: bool = True) -> ConsoleSession:
    transport = JobServiceClient(settings.endpoint, timeout_ms=settings.request_timeout_ms)
    stream_client = (
        StreamClient(settings.endpoint, reconnect_delay_ms=settings.stream.reconnect_delay_ms) if observe else None
    )
    return ConsoleSession(transport, stream_client, console_alert, settings=settings)


async def _load_catalog(session: ConsoleSession) -> ConsoleConfig:
    config = await session.load_config()
    if config.error:
        raise ForemanError(f"Unable to load configuration: {config.error}")
    return config


async def command_validate(config_path: Path, jobs_path: Path) -> int:
    session = build_session(load_settings(config_path), observe=False)
    try:
        config = await _load_catalog(session)
        drafts, delay = parse_job_file(load_yaml_file(jobs_path), config)
        session.delay.reset()
        apply_delay_options(session.delay, delay)
        print(f"Jobs file: {jobs_path}")
        invalid = _print_draft_report(drafts)
        schedule = "immediate" if session.delay.is_immediate else session.delay.mode
        print(f"Schedule: {schedule} ({'ok' if session.delay.is_valid else 'INVALID'})")
        return 1 if invalid or not session.delay.is_valid else 0
    finally:
        await session.close()


def command_preview(crontab: str, count: int) -> int:
    if not is_valid_crontab(crontab):
        raise ForemanError(f'Invalid crontab expression "{crontab}".')
    print(f"Next {count} run(s) of '{crontab}':")
    for run_at in next_fire_times(crontab, count):
        print(f"- {format_datetime(run_at)}")
    return 0


async def command_submit(
    config_path: Path,
    jobs_path: Path,
    time_text: Optional[str],
    crontab: Optional[str],
    skip: Optional[str],
    pause: bool,
    summary: Optional[str],
) -> int:
    session = build_session(load_settings(config_path), observe=False)
    try:
        config = await _load_catalog(session)
        drafts, delay = parse_job_file(load_yaml_file(jobs_path), config)
        if time_text is not None or crontab is not None:
            delay = {"time": time_text, "crontab": crontab, "skip": skip, "pause": pause}
        session.jobs.replace(drafts)
        apply_delay_options(session.delay, delay)
        session.delay.jobs_changed(session.jobs.drafts)
        if not session.can_submit():
            _print_draft_report(session.jobs.drafts)
            if not session.delay.is_valid:
                print("Schedule is invalid.")
            if session.delay.is_restricted:
                print(f'Action "{session.delay.action}" is restricted for these jobs.')
            raise ForemanError("Nothing submitted.")
        return 0 if await session.submit(summary) else 1
    finally:
        await session.close()


async def _wait_for_works(session: ConsoleSession, timeout: float) -> None:
    loaded = asyncio.Event()

    def on_event(event: Dict[str, Any]) -> None:
        if event.get("event") == EventKind.GET_DELAYED_WORKS.value:
            loaded.set()

    session.add_event_listener(on_event)
    await _load_catalog(session)
    if session.stream is None or not await session.stream.wait_connected(timeout):
        raise ForemanError("Event stream is not available.")
    if session.config.is_delay_restricted(ACTION_GET):
        raise ForemanError("Listing delayed works is restricted.")
    session.go_to_delayed_works_mode()
    try:
        await asyncio.wait_for(loaded.wait(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ForemanError("Timed out waiting for delayed works.") from exc


async def command_works(config_path: Path, timeout: float) -> int:
    session = build_session(load_settings(config_path))
    try:
        await _wait_for_works(session, timeout)
        works = session.delayed_works.works
        print(f"Delayed works: {len(works)}")
        for record in works:
            schedule = record.time if record.time is not None else f"crontab '{record.crontab}'"
            restricted = ",".join(sorted(action for action, flag in record.delay_restricted.items() if flag))
            print(
                f"- {record.id}: {record.summary} | {schedule} | jobs={len(record.jobs)}"
                f" | update={record.update_count}" + (f" | restricted={restricted}" if restricted else "")
            )
        return 0
    finally:
        await session.close()


async def command_delete(config_path: Path, work_id: str, timeout: float) -> int:
    session = build_session(load_settings(config_path))
    try:
        await _wait_for_works(session, timeout)
        key: Any = int(work_id) if work_id.isdigit() else work_id
        record = session.delayed_works.records_by_id.get(key)
        if record is None:
            raise ForemanError(f'Unknown delayed work "{work_id}".')
        if record.delay_restricted.get(ACTION_DELETE) or session.config.is_delay_restricted(ACTION_DELETE):
            raise ForemanError(f'Deleting delayed work "{work_id}" is restricted.')
        deleted = await session.delayed_works.delete_record(key)
        if deleted:
            logger.info("Delayed work %s deleted.", work_id)
        return 0 if deleted else 1
    finally:
        await session.close()


async def command_watch(config_path: Path, seconds: Optional[float]) -> int:
    session = build_session(load_settings(config_path))
    session.observer.on_reveal = lambda event: print(format_event(event), flush=True)
    try:
        await _load_catalog(session)
        logger.info("Watching events (Ctrl+C to stop).")
        if seconds is not None:
            await asyncio.sleep(seconds)
        else:
            await asyncio.Event().wait()
        return 0
    finally:
        await session.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="foreman.py job console",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to foreman YAML settings (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a jobs file against the catalog")
    validate_parser.add_argument("--config", help=f"Path to settings (default: {DEFAULT_CONFIG})")
    validate_parser.add_argument("--jobs", required=True, help="Path to jobs YAML file")

    preview_parser = subparsers.add_parser("preview", help="Show next fire times of a crontab")
    preview_parser.add_argument("--crontab", required=True, help="Crontab expression")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    submit_parser = subparsers.add_parser("submit", help="Create or delay jobs")
    submit_parser.add_argument("--config", help=f"Path to settings (default: {DEFAULT_CONFIG})")
    submit_parser.add_argument("--jobs", required=True, help="Path to jobs YAML file")
    schedule_group = submit_parser.add_mutually_exclusive_group()
    schedule_group.add_argument("--time", help="Run once at this date/time")
    schedule_group.add_argument("--crontab", help="Run on this crontab schedule")
    submit_parser.add_argument("--skip", help="Skip this many crontab runs")
    submit_parser.add_argument("--pause", action="store_true", help="Create the schedule paused")
    submit_parser.add_argument("--summary", help="Delayed work summary")

    watch_parser = subparsers.add_parser("watch", help="Print live job events")
    watch_parser.add_argument("--config", help=f"Path to settings (default: {DEFAULT_CONFIG})")
    watch_parser.add_argument("--seconds", type=float, help="Stop after this many seconds")

    works_parser = subparsers.add_parser("works", help="List delayed works")
    works_parser.add_argument("--config", help=f"Path to settings (default: {DEFAULT_CONFIG})")
    works_parser.add_argument("--timeout", type=float, default=DEFAULT_WAIT_SECONDS, help="Wait limit in seconds")

    delete_parser = subparsers.add_parser("delete", help="Delete a delayed work")
    delete_parser.add_argument("--config", help=f"Path to settings (default: {DEFAULT_CONFIG})")
    delete_parser.add_argument("--id", required=True, help="Delayed work id")
    delete_parser.add_argument("--timeout", type=float, default=DEFAULT_WAIT_SECONDS, help="Wait limit in seconds")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(getattr(args, "config", None) or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return asyncio.run(command_validate(config_path, Path(args.jobs)))
        if args.command == "preview":
            if args.count <= 0:
                raise ForemanError("--count must be >= 1")
            return command_preview(args.crontab, args.count)
        if args.command == "submit":
            if (args.skip or args.pause) and not args.crontab:
                raise ForemanError("--skip and --pause require --crontab")
            return asyncio.run(
                command_submit(
                    config_path,
                    Path(args.jobs),
                    time_text=args.time,
                    crontab=args.crontab,
                    skip=args.skip,
                    pause=args.pause,
                    summary=args.summary,
                )
            )
        if args.command == "watch":
            return asyncio.run(command_watch(config_path, args.seconds))
        if args.command == "works":
            return asyncio.run(command_works(config_path, args.timeout))
        if args.command == "delete":
            return asyncio.run(command_delete(config_path, args.id, args.timeout))
        raise ForemanError(f"Unsupported command: {args.command}")
    except ForemanError as exc:
        logger.error(str(exc))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return 130
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
