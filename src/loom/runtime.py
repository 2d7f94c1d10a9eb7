"""Composition root: build the session layer from configuration."""

from __future__ import annotations

from loom.config import LoomConfig, get_default_config
from loom.core.compaction import ContextWindowCompactor, Summarizer
from loom.core.tokens import TokenEstimator
from loom.sessions.events import SessionEventBus
from loom.sessions.manager import SessionLifecycleManager
from loom.sessions.store import ConversationStore


def create_estimator(config: LoomConfig) -> TokenEstimator:
    return TokenEstimator(config.tokens.to_overheads())


def create_store(
    config: LoomConfig, estimator: TokenEstimator | None = None
) -> ConversationStore:
    return ConversationStore(config.projects_path, estimator or create_estimator(config))


def create_compactor(
    config: LoomConfig,
    estimator: TokenEstimator | None = None,
    summarizer: Summarizer | None = None,
) -> ContextWindowCompactor:
    return ContextWindowCompactor(
        settings=config.compaction.to_settings(),
        estimator=estimator or create_estimator(config),
        summarizer=summarizer,
    )


def create_session_manager(
    config: LoomConfig | None = None,
    events: SessionEventBus | None = None,
    summarizer: Summarizer | None = None,
) -> SessionLifecycleManager:
    """Wire a SessionLifecycleManager with one shared estimator."""
    config = config or get_default_config()
    estimator = create_estimator(config)
    return SessionLifecycleManager(
        store=create_store(config, estimator),
        compactor=create_compactor(config, estimator, summarizer),
        estimator=estimator,
        settings=config.sessions.to_settings(),
        default_model=config.sessions.default_model,
        max_tokens_in_memory=config.sessions.max_tokens_in_memory,
        events=events,
    )
