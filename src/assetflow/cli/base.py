"""Base command class for shared CLI setup/teardown."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from assetflow.database import get_engine_kwargs
from assetflow.settings import settings


class CliCommand:
    """Base class for all CLI commands with shared setup/teardown."""

    def __init__(self):
        self.engine = None
        self.Session = None
        self.db = None

    def setup_db(self):
        """Initialize database connection."""
        self.engine = create_engine(
            settings.database_url,
            **get_engine_kwargs(),
        )
        self.Session = sessionmaker(bind=self.engine)
        self.db = self.Session()

    def cleanup_db(self):
        """Close database connection."""
        if self.db:
            self.db.close()
        if self.engine is not None:
            self.engine.dispose()

    def run(self):
        """Execute command - override in subclasses."""
        raise NotImplementedError

    def __enter__(self):
        self.setup_db()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup_db()
