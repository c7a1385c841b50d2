"""catalog.tools - Maintenance tools run against a catalog store."""

from .migrateImages import ImageMigration, MigrationReport, parseDataUrl, isDataImage

__all__ = ['ImageMigration', 'MigrationReport', 'parseDataUrl', 'isDataImage']
