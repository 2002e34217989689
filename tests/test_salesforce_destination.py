"""Tests for the Salesforce bulk-upsert destination."""

from unittest.mock import MagicMock, patch

import pytest
from simple_salesforce.exceptions import SalesforceAuthenticationFailed, SalesforceGeneralError

from dataforge.connectors.destinations.salesforce import SalesforceDestination, map_record
from dataforge.exceptions import AuthenticationError, ConfigurationError, SinkError
from dataforge.models import DestinationRecord

CONFIG = {
    "username": "user@example.com",
    "password": "pw",
    "security_token": "tok",
    "object_name": "Customer_Weekly_Metric__c",
    "external_id_field": "External_Signal_Id__c",
    "field_mapping": {"signal_id": "External_Signal_Id__c", "tier": "Customer_Tier__c"},
}


@pytest.fixture
def mock_sf():
    with patch("dataforge.connectors.destinations.salesforce.Salesforce") as sf_cls:
        sf = MagicMock()
        sf_cls.return_value = sf
        yield sf_cls, sf


def _destination():
    destination = SalesforceDestination()
    destination.initialize(CONFIG)
    return destination


class TestMapRecord:
    def test_mapped_and_unmapped_keys(self):
        assert map_record({"signal_id": "S1", "Other__c": 2}, {"signal_id": "External_Signal_Id__c"}) == {
            "External_Signal_Id__c": "S1",
            "Other__c": 2,
        }


class TestInitialize:
    def test_logs_in_with_credentials(self, mock_sf):
        sf_cls, _sf = mock_sf
        _destination()
        sf_cls.assert_called_once_with(
            username="user@example.com", password="pw", security_token="tok", domain="login"
        )

    def test_invalid_domain_rejected(self, mock_sf):
        with pytest.raises(ConfigurationError, match="domain"):
            SalesforceDestination().initialize({**CONFIG, "domain": "prod"})

    def test_login_failure(self, mock_sf):
        sf_cls, _sf = mock_sf
        sf_cls.side_effect = SalesforceAuthenticationFailed("INVALID_LOGIN", "bad password")
        with pytest.raises(AuthenticationError, match="Salesforce login failed"):
            _destination()


class TestRun:
    def test_bulk_upsert_on_external_id(self, mock_sf):
        _sf_cls, sf = mock_sf
        sf.bulk.Customer_Weekly_Metric__c.upsert.return_value = [
            {"success": True, "id": "a01"},
            {"success": False, "errors": ["FIELD_ERROR"]},
        ]
        record = DestinationRecord(
            pipeline_id=4,
            records=(b'{"signal_id": "S1", "tier": "gold"}', b'{"signal_id": "S2"}'),
        )

        result = _destination().run(record)

        args, kwargs = sf.bulk.Customer_Weekly_Metric__c.upsert.call_args
        assert args[0] == [
            {"External_Signal_Id__c": "S1", "Customer_Tier__c": "gold"},
            {"External_Signal_Id__c": "S2"},
        ]
        assert args[1] == "External_Signal_Id__c"
        assert kwargs["batch_size"] == 10000
        assert result.succeeded == 1
        assert result.failed == 1
        assert result.sample_errors[0]["index"] == 1

    def test_invalid_records_skipped_before_upsert(self, mock_sf):
        _sf_cls, sf = mock_sf
        sf.bulk.Customer_Weekly_Metric__c.upsert.return_value = [{"success": True}]
        record = DestinationRecord(pipeline_id=4, records=(b"oops", b'{"tier": "x"}', b'{"signal_id": "S3"}'))

        result = _destination().run(record)

        sent = sf.bulk.Customer_Weekly_Metric__c.upsert.call_args.args[0]
        assert sent == [{"External_Signal_Id__c": "S3"}]
        assert result.succeeded == 1
        assert [e["index"] for e in result.sample_errors] == [0, 1]

    def test_nothing_valid_skips_upsert(self, mock_sf):
        _sf_cls, sf = mock_sf
        result = _destination().run(DestinationRecord(pipeline_id=4, records=(b"oops",)))
        sf.bulk.Customer_Weekly_Metric__c.upsert.assert_not_called()
        assert result.failed == 1

    def test_api_failure_raises_sink_error(self, mock_sf):
        _sf_cls, sf = mock_sf
        sf.bulk.Customer_Weekly_Metric__c.upsert.side_effect = SalesforceGeneralError(
            "https://x", 500, "Customer_Weekly_Metric__c", "server error"
        )
        with pytest.raises(SinkError, match="bulk upsert failed"):
            _destination().run(DestinationRecord(pipeline_id=4, records=(b'{"signal_id": "S1"}',)))
