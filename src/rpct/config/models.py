from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    pass


# Per-shard results key jobs by name next to the shard id.
RESERVED_JOB_NAMES = frozenset({"shard"})


@dataclass(frozen=True, slots=True)
class ClientConfig:
    nodelay: bool = True


@dataclass(frozen=True, slots=True)
class ServerConfig:
    nodelay: bool = True


@dataclass(frozen=True, slots=True)
class JobConfig:
    name: str
    type: str
    verb: str = ""
    parallelism: int = 0
    shares: int = 100
    duration: float = 0.0

    def __post_init__(self) -> None:
        if self.name in RESERVED_JOB_NAMES:
            msg = f"Job name {self.name!r} is reserved"
            raise ConfigError(msg)
        if self.shares <= 0:
            msg = f"Job {self.name!r}: shares must be positive, got {self.shares}"
            raise ConfigError(msg)
        if self.type == "rpc":
            if not self.verb:
                msg = f"Job {self.name!r}: rpc job requires a verb"
                raise ConfigError(msg)
            if self.parallelism <= 0:
                msg = f"Job {self.name!r}: parallelism must be positive, got {self.parallelism}"
                raise ConfigError(msg)


@dataclass(frozen=True, slots=True)
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    jobs: tuple[JobConfig, ...] = ()

    def with_duration(self, seconds: float) -> Config:
        jobs = tuple(replace(job, duration=seconds) for job in self.jobs)
        return replace(self, jobs=jobs)


def config_from_mapping(data: Mapping[str, Any] | None) -> Config:
    if data is None:
        return Config()
    if not isinstance(data, Mapping):
        msg = f"Config must be a mapping, got {type(data).__name__}"
        raise ConfigError(msg)
    client = ClientConfig(nodelay=_nodelay(data.get("client"), "client"))
    server = ServerConfig(nodelay=_nodelay(data.get("server"), "server"))
    raw_jobs = data.get("jobs") or []
    if not isinstance(raw_jobs, list):
        msg = "'jobs' must be a sequence"
        raise ConfigError(msg)
    jobs = tuple(_job_from_mapping(item) for item in raw_jobs)
    return Config(client=client, server=server, jobs=jobs)


def load_config(path: str | Path) -> Config:
    with Path(path).open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            msg = f"Cannot parse {path}: {exc}"
            raise ConfigError(msg) from exc
    return config_from_mapping(data)


def _nodelay(section: Any, name: str) -> bool:
    if section is None:
        return True
    if not isinstance(section, Mapping):
        msg = f"'{name}' must be a mapping"
        raise ConfigError(msg)
    return bool(section.get("nodelay", True))


def _job_from_mapping(item: Any) -> JobConfig:
    if not isinstance(item, Mapping):
        msg = "Each job must be a mapping"
        raise ConfigError(msg)
    for key in ("name", "type"):
        if key not in item:
            msg = f"Job is missing required field {key!r}"
            raise ConfigError(msg)
    name = str(item["name"])
    job_type = str(item["type"])
    verb = ""
    parallelism = 0
    if job_type == "rpc":
        for key in ("verb", "parallelism"):
            if key not in item:
                msg = f"Job {name!r}: rpc job is missing required field {key!r}"
                raise ConfigError(msg)
        verb = str(item["verb"])
        parallelism = _int(item["parallelism"], name, "parallelism")
    shares = _int(item.get("shares", 100), name, "shares")
    return JobConfig(name=name, type=job_type, verb=verb, parallelism=parallelism, shares=shares)


def _int(value: Any, job: str, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"Job {job!r}: {key} must be an integer, got {value!r}"
        raise ConfigError(msg)
    return value
