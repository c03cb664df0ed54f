"""
Seed the framework catalog from YAML documents.

Run: cd backend && python ../scripts/seed_catalog.py ../scripts/catalogs/*.yaml
Files whose framework version already exists are skipped.
"""
import asyncio
import logging
import sys
from pathlib import Path

# Ensure backend is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from grc_api.database import async_session, engine  # noqa: E402
from grc_api.services.catalog_import import CatalogImportError, import_from_yaml  # noqa: E402

logger = logging.getLogger("seed_catalog")


async def seed(paths: list[Path]) -> int:
    imported = 0
    async with async_session() as s:
        for path in paths:
            try:
                fv = await import_from_yaml(s, path.read_text(encoding="utf-8"))
            except CatalogImportError as exc:
                await s.rollback()
                logger.warning("Skipped %s: %s", path.name, exc)
                continue
            await s.commit()
            imported += 1
            logger.info("Seeded %s (%d requirements)", fv.display_name, fv.total_requirements)
    await engine.dispose()
    return imported


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    files = [Path(p) for p in sys.argv[1:]] or sorted((Path(__file__).parent / "catalogs").glob("*.yaml"))
    count = asyncio.run(seed(files))
    print(f"Imported {count} of {len(files)} catalog file(s)")
