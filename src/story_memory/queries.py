"""SQL query builders for Story Memory."""


def sanitize_table_name(name: str) -> str:
    """Sanitize a string for use as a table name.

    Only allows alphanumeric characters and underscores.
    """
    return "".join(c if c.isalnum() or c == "_" else "_" for c in name)


def build_chapter_vec_ddl(dimensions: int, table: str = "chapter_vec") -> str:
    """Build DDL for the chapter summary vector table."""
    return f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {sanitize_table_name(table)}
    USING vec0(embedding float[{dimensions}])
    """


def build_chapter_query_similarity(table: str = "chapter_vec") -> str:
    """Build query for a story's chapters ordered by vector similarity.

    sqlite-vec applies k before any join filter, so the caller over-fetches
    (``k``) and the story filter may leave fewer than ``limit`` rows.
    """
    return f"""
    SELECT c.id, cv.distance
    FROM {sanitize_table_name(table)} cv
    JOIN chapters c ON cv.rowid = c.seq
    WHERE cv.embedding MATCH :query_vector
      AND k = :k
      AND c.story_id = :story_id
    ORDER BY cv.distance
    LIMIT :limit
    """


def build_entries_query(limit: int | None = None) -> str:
    """Build query for a story's entries in position order, optionally only the latest."""
    if limit is None:
        return """
        SELECT * FROM story_entries
        WHERE story_id = :story_id
        ORDER BY position
        """
    return f"""
    SELECT * FROM (
        SELECT * FROM story_entries
        WHERE story_id = :story_id
        ORDER BY position DESC
        LIMIT {int(limit)}
    ) ORDER BY position
    """
