"""Tests for dataforge.metadata — ODBC-backed source/destination lookup."""

from unittest.mock import MagicMock, patch

import pyodbc
import pytest

from dataforge.exceptions import ConfigurationError, EntityNotFoundError, MetadataError
from dataforge.metadata import SqlMetadataStore, parse_config_blob


@pytest.fixture
def mock_connection():
    """Create a mock pyodbc connection with cursor."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value = cursor
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)
    return conn, cursor


class TestParseConfigBlob:
    def test_json_text(self):
        assert parse_config_blob('{"index": "products"}') == {"index": "products"}

    def test_bytes(self):
        assert parse_config_blob(b'{"a": 1}') == {"a": 1}

    def test_none_is_empty(self):
        assert parse_config_blob(None) == {}

    def test_invalid_json(self):
        with pytest.raises(MetadataError, match="not valid JSON"):
            parse_config_blob("{oops")

    def test_non_object(self):
        with pytest.raises(MetadataError, match="JSON object"):
            parse_config_blob("[1, 2]")


class TestSqlMetadataStore:
    def test_requires_connection_string(self):
        with pytest.raises(ConfigurationError, match="METADATA_DSN"):
            SqlMetadataStore(None)

    @patch("dataforge.metadata.pyodbc.connect")
    def test_get_source(self, mock_connect, mock_connection):
        conn, cursor = mock_connection
        mock_connect.return_value = conn
        cursor.fetchone.return_value = (3, "mongodb", '{"client_id": "c"}')

        entity = SqlMetadataStore("DSN=meta").get_source_by_id(3)

        assert entity.id == 3
        assert entity.type == "mongodb"
        assert entity.config == {"client_id": "c"}
        sql, param = cursor.execute.call_args.args
        assert "FROM sources" in sql
        assert param == 3

    @patch("dataforge.metadata.pyodbc.connect")
    def test_get_destination(self, mock_connect, mock_connection):
        conn, cursor = mock_connection
        mock_connect.return_value = conn
        cursor.fetchone.return_value = (9, "algolia", "{}")

        entity = SqlMetadataStore("DSN=meta").get_destination_by_id(9)

        assert entity.type == "algolia"
        assert "FROM destinations" in cursor.execute.call_args.args[0]

    @patch("dataforge.metadata.pyodbc.connect")
    def test_missing_row(self, mock_connect, mock_connection):
        conn, cursor = mock_connection
        mock_connect.return_value = conn
        cursor.fetchone.return_value = None

        with pytest.raises(EntityNotFoundError, match="Destination 9 not found"):
            SqlMetadataStore("DSN=meta").get_destination_by_id(9)

    @patch("dataforge.metadata.pyodbc.connect", side_effect=pyodbc.OperationalError("timeout"))
    def test_driver_errors_wrapped(self, _mock_connect):
        with pytest.raises(MetadataError, match="Failed to read source 3"):
            SqlMetadataStore("DSN=meta").get_source_by_id(3)
