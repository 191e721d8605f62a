"""Read access to the tag taxonomy used to build tagging prompts."""

import logging
from typing import List, Optional

from psycopg2.extras import RealDictCursor

from .connection import get_connection

logger = logging.getLogger(__name__)


class TagStore:
    """tags(id, slug, label, description, parent_id) queries."""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url

    def fetch_tags(self) -> List[dict]:
        """
        All tags with their parent's slug and label attached.

        Returns:
            Rows with id, slug, label, description, parent_id, parent_slug,
            parent_label (parent fields are None for top-level tags)
        """
        with get_connection(self.database_url) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT t.id, t.slug, t.label, t.description, t.parent_id,
                           p.slug AS parent_slug, p.label AS parent_label
                    FROM tags t
                    LEFT JOIN tags p ON p.id = t.parent_id
                    ORDER BY p.slug NULLS FIRST, t.slug
                """)
                tags = [dict(row) for row in cur.fetchall()]

        logger.info(f"Loaded {len(tags)} tags")
        return tags
