"""
Bulk-import a CSV or one-address-per-line file into a repository
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.exceptions import SnowballException
from core.logging import setup_logging
from snowball.engine import SnowballEngine

setup_logging()
logger = logging.getLogger(__name__)


async def import_csv(repository_id: str, file_path: str, user_id: str) -> int:
    engine = SnowballEngine.from_settings()
    try:
        async with engine.session_factory() as session:
            intake = engine.intake(session)
            rows = intake.extractor.extract_file(file_path)
            result = await intake.submit_bulk(
                repository_id,
                [row.raw for row in rows],
                submitted_by_user_id=user_id,
            )
        summary = result.to_dict()
        summary.pop("decisions")
        print(json.dumps(summary, indent=2))
        return 0
    except SnowballException as e:
        logger.error(f"Import failed: {e}", extra={"error_context": e.to_dict()})
        return 1
    finally:
        if engine.redis is not None:
            await engine.redis.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("repository_id")
    parser.add_argument("file_path")
    parser.add_argument("--user-id", required=True, help="Submitting user (karma is looked up for this id)")
    args = parser.parse_args()
    sys.exit(asyncio.run(import_csv(args.repository_id, args.file_path, args.user_id)))
