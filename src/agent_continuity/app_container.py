import logging
import os
from pathlib import Path
from typing import Optional

from agent_continuity.config import STATE_DB_KEY, ContinuityConfig
from agent_continuity.events.event_bus import TelemetryBus
from agent_continuity.execution.file_lister import RipgrepFileLister
from agent_continuity.execution.git import GitCli
from agent_continuity.persistence.sqlite_store import SqliteContinuityStore
from agent_continuity.services.continuity_service import ContinuityService


logger = logging.getLogger(__name__)


def build_continuity_service(
    state_db_path: Optional[Path] = None,
    config: Optional[ContinuityConfig] = None,
    telemetry: Optional[TelemetryBus] = None,
) -> ContinuityService:
    db_path = state_db_path or _read_state_db_path()
    store = SqliteContinuityStore(db_path=db_path)
    git = GitCli()
    lister = RipgrepFileLister(git=git)
    # Without an explicit config the environment is re-read on every turn.
    config_source = config if config is not None else ContinuityConfig.from_env
    logger.info("continuity state db: %s", store.db_path)
    return ContinuityService(
        store=store,
        conversations=store,
        git=git,
        lister=lister,
        config=config_source,
        telemetry=telemetry,
    )


def _read_state_db_path() -> Path:
    raw = (os.environ.get(STATE_DB_KEY) or "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".config" / "agent-continuity" / "continuity.db"
