"""
Per-model token budgets for the provider batch queue.
"""

from __future__ import annotations

import threading
import typing as t
from dataclasses import dataclass

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from batchrelay.db.models import ModelCapacityOverride, Setting

if t.TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from batchrelay.db.session import Database
    from batchrelay.settings import Settings

log = structlog.get_logger(__name__)

OVERRIDES_SETTING_NAME = "capacity_overrides"

# Tier 1 enqueued-token limits, matched by longest prefix.
DEFAULT_BATCH_TOKEN_LIMITS: dict[str, int] = {
    "gpt-5.2-chat-latest": 900_000,
    "gpt-5.2-codex": 900_000,
    "gpt-5.2-pro": 900_000,
    "gpt-5.2": 900_000,
    "gpt-5.1-chat-latest": 900_000,
    "gpt-5.1-codex-max": 900_000,
    "gpt-5.1-codex-mini": 2_000_000,
    "gpt-5.1-codex": 900_000,
    "gpt-5.1": 900_000,
    "gpt-5-search-api": 6_000,
    "gpt-5-mini": 5_000_000,
    "gpt-5-nano": 2_000_000,
    "gpt-5-pro": 90_000,
    "gpt-5-chat-latest": 900_000,
    "gpt-5-codex": 900_000,
    "gpt-5": 1_500_000,
    "gpt-4o-mini-search-preview": 6_000,
    "gpt-4o-mini-transcribe": 50_000,
    "gpt-4o-mini-tts": 50_000,
    "gpt-4o-mini": 2_000_000,
    "gpt-4.1-mini-long-context": 4_000_000,
    "gpt-4.1-mini": 2_000_000,
    "gpt-4.1-nano-long-context": 4_000_000,
    "gpt-4.1-nano": 2_000_000,
    "gpt-4.1-long-context": 2_000_000,
    "gpt-4.1": 900_000,
    "gpt-4o-search-preview": 6_000,
    "gpt-4o-transcribe-diarize": 250_000,
    "gpt-4o-transcribe": 10_000,
    "gpt-4o": 90_000,
    "gpt-4-turbo": 90_000,
    "gpt-4": 100_000,
    "gpt-3.5-turbo-instruct": 200_000,
    "gpt-3.5-turbo": 2_000_000,
    "gpt-audio-mini": 250_000,
    "gpt-audio": 250_000,
    "o4-mini-deep-research": 200_000,
    "o4-mini": 2_000_000,
    "o3-mini": 2_000_000,
    "o3": 90_000,
    "o1-pro": 90_000,
    "o1": 90_000,
    "text-embedding-3-large": 3_000_000,
    "text-embedding-3-small": 3_000_000,
    "text-embedding-ada-002": 3_000_000,
    "omni-moderation": 1_000_000,
}


@dataclass(frozen=True)
class CapacityBudget:
    limit: int
    source: t.Literal["override", "default", "fallback"]
    matched_prefix: str | None = None


def longest_prefix_match(model: str, table: t.Mapping[str, int]) -> tuple[str, int] | None:
    """
    Return the ``(prefix, limit)`` entry of ``table`` with the longest prefix
    of ``model``, compared case-insensitively.
    """
    lowered = model.lower()
    best: tuple[str, int] | None = None
    for prefix, limit in table.items():
        if lowered.startswith(prefix) and (best is None or len(prefix) > len(best[0])):
            best = (prefix, limit)
    return best


def get_or_create_overrides_setting(session: "Session") -> Setting:
    """
    Return the singleton settings row, creating it on first use.

    A concurrent creator losing on the unique name re-reads the winner's row.
    """
    stmt = select(Setting).where(Setting.name == OVERRIDES_SETTING_NAME)
    setting = session.execute(stmt).scalar_one_or_none()
    if setting is not None:
        return setting
    try:
        with session.begin_nested():
            setting = Setting(name=OVERRIDES_SETTING_NAME, overrides_version=0)
            session.add(setting)
    except IntegrityError:
        setting = session.execute(stmt).scalar_one()
    return setting


def _bump_version(session: "Session") -> int:
    setting = get_or_create_overrides_setting(session)
    setting.overrides_version += 1
    return setting.overrides_version


def list_overrides(session: "Session") -> list[ModelCapacityOverride]:
    stmt = select(ModelCapacityOverride).order_by(ModelCapacityOverride.model_prefix)
    return list(session.execute(stmt).scalars())


def set_override(session: "Session", model_prefix: str, token_limit: int) -> ModelCapacityOverride:
    """
    Create or update the operator override for ``model_prefix``.

    Parameters
    ----------
    session : Session
        Session; committed by this function.
    model_prefix : str
        Model prefix, stored lower-case.
    token_limit : int
        Token budget, must be positive.

    Returns
    -------
    ModelCapacityOverride
        The stored override.
    """
    prefix = model_prefix.strip().lower()
    if not prefix:
        raise ValueError("model_prefix must not be empty")
    if token_limit <= 0:
        raise ValueError("token_limit must be positive")

    override = session.execute(
        select(ModelCapacityOverride).where(ModelCapacityOverride.model_prefix == prefix)
    ).scalar_one_or_none()
    if override is None:
        override = ModelCapacityOverride(model_prefix=prefix, token_limit=token_limit)
        session.add(override)
    else:
        override.token_limit = token_limit
    version = _bump_version(session)
    session.commit()
    log.info(event="Capacity override set", model_prefix=prefix, token_limit=token_limit, version=version)
    return override


def delete_override(session: "Session", model_prefix: str) -> bool:
    """
    Delete the override for ``model_prefix``.

    Returns
    -------
    bool
        Whether an override existed.
    """
    prefix = model_prefix.strip().lower()
    result = session.execute(
        delete(ModelCapacityOverride).where(ModelCapacityOverride.model_prefix == prefix)
    )
    if not result.rowcount:
        session.rollback()
        return False
    version = _bump_version(session)
    session.commit()
    log.info(event="Capacity override deleted", model_prefix=prefix, version=version)
    return True


class RateLimits:
    """
    Resolve the capacity budget of a model.

    Resolution order is the longest-prefix operator override, the
    longest-prefix built-in default and finally the configured unknown-model
    fallback. Overrides are cached in memory and reloaded whenever the
    settings row's ``overrides_version`` moves.

    Parameters
    ----------
    database : Database
        Database holding the overrides.
    settings : Settings
        Provides the unknown-model fallback.
    defaults : typing.Mapping[str, int] | None
        Built-in table, ``DEFAULT_BATCH_TOKEN_LIMITS`` by default.
    """

    def __init__(
        self,
        database: "Database",
        settings: "Settings",
        *,
        defaults: t.Mapping[str, int] | None = None,
    ) -> None:
        self.database = database
        self.fallback_limit = settings.default_unknown_model_token_limit
        self.defaults = dict(DEFAULT_BATCH_TOKEN_LIMITS if defaults is None else defaults)
        self._lock = threading.Lock()
        self._overrides: dict[str, int] = {}
        self._loaded_version: int | None = None
        self._warned_models: set[str] = set()

    def _current_overrides(self, session: "Session") -> dict[str, int]:
        version = session.execute(
            select(Setting.overrides_version).where(Setting.name == OVERRIDES_SETTING_NAME)
        ).scalar_one_or_none()
        version = version or 0
        with self._lock:
            if self._loaded_version == version:
                return self._overrides
        rows = session.execute(
            select(ModelCapacityOverride.model_prefix, ModelCapacityOverride.token_limit)
        ).all()
        overrides = {prefix: limit for prefix, limit in rows}
        with self._lock:
            self._overrides = overrides
            self._loaded_version = version
        log.debug(event="Reloaded capacity overrides", version=version, count=len(overrides))
        return overrides

    def budget_for(self, model: str, *, session: "Session | None" = None) -> CapacityBudget:
        """
        Return the token budget for ``model``.

        Parameters
        ----------
        model : str
            Model name.
        session : Session | None
            Session to read overrides with, a short-lived one is opened otherwise.

        Returns
        -------
        CapacityBudget
            Limit, where it came from and the matched prefix.
        """
        if session is None:
            with self.database.session() as own_session:
                overrides = self._current_overrides(own_session)
        else:
            overrides = self._current_overrides(session)

        match = longest_prefix_match(model, overrides)
        if match is not None:
            return CapacityBudget(limit=match[1], source="override", matched_prefix=match[0])
        match = longest_prefix_match(model, self.defaults)
        if match is not None:
            return CapacityBudget(limit=match[1], source="default", matched_prefix=match[0])

        with self._lock:
            first_time = model not in self._warned_models
            self._warned_models.add(model)
        if first_time:
            log.warning(
                event="No capacity limit known for model, using fallback",
                model=model,
                limit=self.fallback_limit,
            )
        return CapacityBudget(limit=self.fallback_limit, source="fallback")
