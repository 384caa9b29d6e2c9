"""Tests for SQL query builders."""

from story_memory.queries import (
    build_chapter_query_similarity,
    build_chapter_vec_ddl,
    build_entries_query,
    sanitize_table_name,
)


def test_sanitize_table_name():
    assert sanitize_table_name("chapter_vec") == "chapter_vec"
    assert sanitize_table_name("bad-name; DROP") == "bad_name__DROP"


def test_vec_ddl_uses_dimensions():
    ddl = build_chapter_vec_ddl(384)
    assert "vec0(embedding float[384])" in ddl
    assert "chapter_vec" in ddl


def test_similarity_query_filters_by_story():
    sql = build_chapter_query_similarity()
    assert ":story_id" in sql
    assert "k = :k" in sql
    assert "LIMIT :limit" in sql


def test_entries_query_limit():
    assert "LIMIT" not in build_entries_query()
    assert "LIMIT 5" in build_entries_query(5)
