"""Seed registry - curated accounts that anchor the trust graph."""
import logging
from typing import Optional
from sqlalchemy.orm import Session

from .identifiers import normalize_identifier
from .models import Seeder


logger = logging.getLogger(__name__)


class DuplicateSeeder(Exception):
    """Seeder with this identifier already exists."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__("Seeder already exists")


class SeederNotFound(Exception):
    """No seeder with this identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__("Seeder not found")


class SeedRegistry:
    """Data access for seeders. Identifiers may be given as hex or npub."""

    def __init__(self, db: Session):
        self.db = db

    def list_seeders(self, region: Optional[str] = None) -> list[Seeder]:
        query = self.db.query(Seeder)
        if region:
            query = query.filter(Seeder.region == region)
        return query.order_by(Seeder.created_at.asc(), Seeder.identifier.asc()).all()

    def get_seeder(self, identifier: str) -> Optional[Seeder]:
        return self.db.get(Seeder, normalize_identifier(identifier))

    def is_seeder(self, identifier: str) -> bool:
        return self.get_seeder(identifier) is not None

    def add_seeder(
        self,
        identifier: str,
        region: str,
        label: Optional[str] = None,
        added_by: Optional[str] = None
    ) -> Seeder:
        """Register a new seeder. Raises DuplicateSeeder if it is already present."""
        hex_key = normalize_identifier(identifier)
        if self.db.get(Seeder, hex_key) is not None:
            raise DuplicateSeeder(hex_key)

        seeder = Seeder(
            identifier=hex_key,
            region=region,
            label=label,
            added_by=added_by
        )
        self.db.add(seeder)
        self.db.commit()
        self.db.refresh(seeder)
        logger.info(f"Added seeder {hex_key[:8]} in region {region}")
        return seeder

    def update_seeder(
        self,
        identifier: str,
        region: Optional[str] = None,
        label: Optional[str] = None
    ) -> Seeder:
        seeder = self.get_seeder(identifier)
        if seeder is None:
            raise SeederNotFound(identifier)
        if region is not None:
            seeder.region = region
        if label is not None:
            seeder.label = label
        self.db.commit()
        self.db.refresh(seeder)
        return seeder

    def remove_seeder(self, identifier: str) -> None:
        """Delete a seeder. Past snapshots keep their own data."""
        seeder = self.get_seeder(identifier)
        if seeder is None:
            raise SeederNotFound(identifier)
        self.db.delete(seeder)
        self.db.commit()
        logger.info(f"Removed seeder {seeder.identifier[:8]}")

    def count(self) -> int:
        return self.db.query(Seeder).count()

    def regions(self) -> list[str]:
        rows = self.db.query(Seeder.region).distinct().order_by(Seeder.region).all()
        return [r[0] for r in rows]
