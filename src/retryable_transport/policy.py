"""Backoff policy configuration and retry policy documents.

This module provides the :class:`BackoffPolicy` value consumed by the
retrying transports, plus :class:`RetryPolicyDoc` and
:class:`PolicyRegistry` for loading named policies from YAML files.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jsonschema
import yaml

from retryable_transport.errors import ConfigurationError, PolicyLoadError

if TYPE_CHECKING:
    from retryable_transport.settings import RetrySettings

__all__ = [
    "DEFAULT_MAX_RETRIES",
    "BackoffPolicy",
    "PolicyRegistry",
    "RetryPolicyDoc",
    "load_policy",
]

DEFAULT_MAX_RETRIES = 3

_SCHEMA_PATH = Path(__file__).with_name("policy.schema.json")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry cap and exponential backoff schedule.

    Attributes
    ----------
    max_retries : int
        Additional attempts allowed after the first one. Total attempts are
        at most ``max_retries + 1``. Defaults to 3.
    initial_interval_s : float
        Base delay before the first retry, in seconds. Defaults to 0.5.
    multiplier : float
        Growth factor applied per retry. Must be >= 1. Defaults to 1.5.
    randomization_factor : float
        Jitter fraction (0.0 to 1.0). A delay ``d`` is drawn uniformly from
        ``[d * (1 - f), d * (1 + f)]``. Defaults to 0.5.
    max_interval_s : float
        Upper bound on the un-jittered delay. Defaults to 60.0.
    max_elapsed_s : float | None
        Optional cap on the total time spent retrying. None means the retry
        count is the only bound. Defaults to None.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_interval_s: float = 0.5
    multiplier: float = 1.5
    randomization_factor: float = 0.5
    max_interval_s: float = 60.0
    max_elapsed_s: float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int):
            raise ConfigurationError.with_details(
                field="max_retries", issue="Must be an integer", hint="Use 0 to disable retries"
            )
        if self.max_retries < 0:
            raise ConfigurationError.with_details(
                field="max_retries", issue="Must be >= 0", hint="Use 0 to disable retries"
            )
        if self.initial_interval_s < 0:
            raise ConfigurationError.with_details(field="initial_interval_s", issue="Must be >= 0")
        if self.multiplier < 1:
            raise ConfigurationError.with_details(field="multiplier", issue="Must be >= 1")
        if not 0.0 <= self.randomization_factor <= 1.0:
            raise ConfigurationError.with_details(
                field="randomization_factor", issue="Must be between 0.0 and 1.0"
            )
        if self.max_interval_s < self.initial_interval_s:
            raise ConfigurationError.with_details(
                field="max_interval_s", issue="Must be >= initial_interval_s"
            )
        if self.max_elapsed_s is not None and self.max_elapsed_s <= 0:
            raise ConfigurationError.with_details(
                field="max_elapsed_s", issue="Must be > 0 when set", hint="Use None for no cap"
            )

    @property
    def max_attempts(self) -> int:
        """Total number of attempts allowed, first one included."""
        return self.max_retries + 1

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> BackoffPolicy:
        """Build a policy from environment-driven settings.

        Parameters
        ----------
        settings : RetrySettings
            Loaded settings.

        Returns
        -------
        BackoffPolicy
            Policy carrying the settings' retry cap and schedule.
        """
        return cls(
            max_retries=settings.max_retries,
            initial_interval_s=settings.initial_interval_s,
            multiplier=settings.multiplier,
            randomization_factor=settings.randomization_factor,
            max_interval_s=settings.max_interval_s,
            max_elapsed_s=settings.max_elapsed_s,
        )


@dataclass(frozen=True)
class RetryPolicyDoc:
    """Named retry policy loaded from a YAML document.

    Attributes
    ----------
    name : str
        Policy name identifier.
    description : str | None
        Human-readable description of the policy.
    backoff : BackoffPolicy
        Retry cap and backoff schedule.
    retry_status : tuple[tuple[int, int] | int, ...]
        Status codes to retry on; entries are single codes or inclusive
        ``(low, high)`` ranges.
    retry_exceptions : tuple[str, ...]
        Exception class names to retry on (matched against the class and
        its bases, e.g. ``"TransportError"``).
    give_up_status : tuple[int, ...]
        Status codes that are never retried, even inside a retry range.
    """

    name: str
    description: str | None
    backoff: BackoffPolicy
    retry_status: tuple[tuple[int, int] | int, ...] = ()
    retry_exceptions: tuple[str, ...] = ()
    give_up_status: tuple[int, ...] = ()


def _parse_status_entry(x: int | str) -> tuple[int, int] | int:
    """Parse status code entry from YAML (int or range string).

    Parameters
    ----------
    x : int | str
        Status code (int) or range string like "500-504".

    Returns
    -------
    tuple[int, int] | int
        Status code or range tuple.
    """
    if isinstance(x, int):
        return x
    lo, hi = x.split("-", 1)
    return (int(lo), int(hi))


def _parse_backoff(obj: dict[str, Any]) -> BackoffPolicy:
    wait = obj.get("wait", {})
    stop = obj.get("stop", {})
    after_delay = stop.get("after_delay_s")
    return BackoffPolicy(
        max_retries=int(obj.get("max_retries", DEFAULT_MAX_RETRIES)),
        initial_interval_s=float(wait.get("initial_s", 0.5)),
        multiplier=float(wait.get("multiplier", 1.5)),
        randomization_factor=float(wait.get("jitter", 0.5)),
        max_interval_s=float(wait.get("max_s", 60.0)),
        max_elapsed_s=float(after_delay) if after_delay is not None else None,
    )


def load_policy(path: Path, schema_path: Path | None = _SCHEMA_PATH) -> RetryPolicyDoc:
    """Load a retry policy from a YAML file.

    Parameters
    ----------
    path : Path
        Path to policy YAML file.
    schema_path : Path | None, optional
        JSON schema used for validation. Defaults to the bundled
        ``policy.schema.json``; pass None to skip validation.

    Returns
    -------
    RetryPolicyDoc
        Loaded policy document.

    Raises
    ------
    PolicyLoadError
        If the file cannot be read, is not valid YAML, or does not match the
        schema.
    """
    try:
        obj = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        msg = f"Could not read retry policy {path}"
        raise PolicyLoadError(msg, cause=exc, context={"path": str(path)}) from exc
    if not isinstance(obj, dict):
        msg = f"Retry policy {path} must be a mapping"
        raise PolicyLoadError(msg, context={"path": str(path)})
    if schema_path is not None and schema_path.exists():
        try:
            jsonschema.validate(obj, json.loads(schema_path.read_text(encoding="utf-8")))
        except jsonschema.ValidationError as exc:
            msg = f"Retry policy {path} failed validation: {exc.message}"
            raise PolicyLoadError(msg, cause=exc, context={"path": str(path)}) from exc
    retry_on = obj.get("retry_on", {})
    try:
        backoff = _parse_backoff(obj)
    except ConfigurationError as exc:
        msg = f"Retry policy {path} has an invalid backoff: {exc.message}"
        raise PolicyLoadError(msg, cause=exc, context={"path": str(path)}) from exc
    return RetryPolicyDoc(
        name=obj["name"],
        description=obj.get("description"),
        backoff=backoff,
        retry_status=tuple(_parse_status_entry(s) for s in retry_on.get("status", [])),
        retry_exceptions=tuple(retry_on.get("exceptions", [])),
        give_up_status=tuple(obj.get("give_up_on_status", [])),
    )


class PolicyRegistry:
    """Registry for loading retry policies from a directory.

    Parameters
    ----------
    root : Path
        Root directory containing policy YAML files.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def get(self, name: str) -> RetryPolicyDoc:
        """Load policy by name.

        Parameters
        ----------
        name : str
            Policy name (without .yaml extension).

        Returns
        -------
        RetryPolicyDoc
            Loaded policy document.

        Raises
        ------
        PolicyLoadError
            If policy file does not exist or is invalid.
        """
        p = self.root / f"{name}.yaml"
        if not p.exists():
            msg = f"Retry policy '{name}' not found in {self.root}"
            raise PolicyLoadError(msg, context={"path": str(p)})
        return load_policy(p)
