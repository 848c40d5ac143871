"""
Store configuration.

Settings come from the environment, optionally seeded from a .env file.
"""
from typing import List, Optional, Tuple
import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from diagramstore.ecs.composition import DEFAULT_COMPOSABLE_PROPERTIES
from diagramstore.ecs.entity_type import DEFAULT_REPOSITORY_VERSION

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_TRUE_VALUES = ("1", "true", "yes", "on")


class StoreSettings(BaseModel):
    """
    Settings of an SqlStore.

    Attributes:
        database_url: SQLAlchemy database URL
        repository_version: Schema version written to and expected in the repository
        echo_sql: Log every statement through sqlalchemy.engine
        log_level: Level for configure_logging
        composable_properties: Inner-object properties stored inline
    """
    database_url: str = "sqlite:///diagramstore.db"
    repository_version: int = DEFAULT_REPOSITORY_VERSION
    echo_sql: bool = False
    log_level: str = "INFO"
    composable_properties: Tuple[str, ...] = Field(default=DEFAULT_COMPOSABLE_PROPERTIES)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "StoreSettings":
        """Read DIAGRAMSTORE_* variables, loading a .env file first."""
        load_dotenv(dotenv_path)
        composable = os.getenv("DIAGRAMSTORE_COMPOSABLE_PROPERTIES")
        names: List[str] = (
            [n.strip() for n in composable.split(",") if n.strip()]
            if composable else list(DEFAULT_COMPOSABLE_PROPERTIES)
        )
        return cls(
            database_url=os.getenv("DIAGRAMSTORE_DATABASE_URL", "sqlite:///diagramstore.db"),
            repository_version=int(os.getenv("DIAGRAMSTORE_REPOSITORY_VERSION", str(DEFAULT_REPOSITORY_VERSION))),
            echo_sql=os.getenv("DIAGRAMSTORE_ECHO_SQL", "false").lower() in _TRUE_VALUES,
            log_level=os.getenv("DIAGRAMSTORE_LOG_LEVEL", "INFO").upper(),
            composable_properties=tuple(names),
        )


def create_store_engine(settings: StoreSettings) -> Engine:
    return create_engine(settings.database_url, echo=settings.echo_sql)


def configure_logging(level: str = "INFO") -> None:
    """Route diagramstore loggers to stderr in the usual format."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
