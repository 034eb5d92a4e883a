"""Unit tests for CloudflareProvider."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from dns_rr.endpoint import AliasTarget, RecordIntent
from dns_rr.engine import Converger
from dns_rr.errors import ProviderCallError
from dns_rr.providers import (
    Change,
    ChangeAction,
    CloudflareProvider,
    RecordSet,
    RecordSetCursor,
)

ZONE_ID = "023e105f4ecef8ad9ca31a8372d0c353"
URL = "https://cf.local/client/v4"


def mock_response(data) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json.return_value = data
    return response


def list_payload(records, page: int = 1, total_pages: int = 1) -> dict:
    return {
        "success": True,
        "errors": [],
        "result": records,
        "result_info": {"page": page, "total_pages": total_pages},
    }


class TestCloudflareList:
    """Tests for Cloudflare listing."""

    def test_groups_records_into_record_sets(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        records = [
            {"id": "1", "name": "www.example.com", "type": "A", "content": "192.0.2.1", "ttl": 300},
            {"id": "2", "name": "www.example.com", "type": "A", "content": "192.0.2.2", "ttl": 300},
            {
                "id": "3",
                "name": "example.com",
                "type": "MX",
                "content": "mail.example.com",
                "priority": 10,
                "ttl": 1,
            },
        ]

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = mock_response(list_payload(records))

            page = provider.list_record_sets(ZONE_ID)

            assert page.is_truncated is False
            assert page.record_sets == (
                RecordSet(
                    name="www.example.com.", type="A", ttl=300, records=("192.0.2.1", "192.0.2.2")
                ),
                RecordSet(name="example.com.", type="MX", ttl=0, records=("10 mail.example.com",)),
            )
            mock_get.assert_called_once_with(
                f"{URL}/zones/{ZONE_ID}/dns_records",
                params={"page": 1, "per_page": 100, "order": "name", "direction": "asc"},
                timeout=10.0,
            )

    def test_named_cursor_narrows_and_pages(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        records = [{"id": "1", "name": "www.example.com", "type": "A", "content": "192.0.2.1"}]

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = mock_response(list_payload(records, page=2, total_pages=3))

            page = provider.list_record_sets(
                ZONE_ID, RecordSetCursor(name="www.example.com.", token="2")
            )

            assert page.is_truncated is True
            assert page.next_cursor == RecordSetCursor(name="www.example.com.", token="3")
            params = mock_get.call_args.kwargs["params"]
            assert params["page"] == 2
            assert params["name"] == "www.example.com"

    def test_all_record_sets_walks_every_page(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        first = [{"id": "1", "name": "a.example.com", "type": "A", "content": "192.0.2.1"}]
        second = [{"id": "2", "name": "b.example.com", "type": "A", "content": "192.0.2.2"}]

        with patch.object(provider._session, "get") as mock_get:
            mock_get.side_effect = [
                mock_response(list_payload(first, page=1, total_pages=2)),
                mock_response(list_payload(second, page=2, total_pages=2)),
            ]

            record_sets = provider.all_record_sets(ZONE_ID)

            assert [r.name for r in record_sets] == ["a.example.com.", "b.example.com."]
            assert mock_get.call_count == 2

    def test_http_error_raises_with_zone(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)

        with patch.object(provider._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(ProviderCallError) as excinfo:
                provider.list_record_sets(ZONE_ID)

            assert excinfo.value.zone_id == ZONE_ID

    def test_unsuccessful_response_raises(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = mock_response(
                {"success": False, "errors": [{"code": 7003, "message": "Could not route"}]}
            )

            with pytest.raises(ProviderCallError, match="Could not route"):
                provider.list_record_sets(ZONE_ID)


class TestCloudflareApplyChangeBatch:
    """Tests for Cloudflare batch submission."""

    def test_creates_and_replaces_in_one_batch(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        changes = [
            Change(
                ChangeAction.CREATE,
                RecordSet(name="new.example.com.", type="A", ttl=300, records=("192.0.2.1",)),
            ),
            Change(
                ChangeAction.UPSERT,
                RecordSet(name="www.example.com.", type="A", ttl=300, records=("192.0.2.2",)),
            ),
        ]
        existing = [{"id": "abc", "name": "www.example.com", "type": "A", "content": "x"}]

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "post"
        ) as mock_post:
            mock_get.return_value = mock_response(list_payload(existing))
            mock_post.return_value = mock_response({"success": True, "errors": [], "result": {}})

            assert provider.apply_change_batch(ZONE_ID, changes) is None

            mock_post.assert_called_once_with(
                f"{URL}/zones/{ZONE_ID}/dns_records/batch",
                json={
                    "puts": [
                        {
                            "id": "abc",
                            "name": "www.example.com",
                            "type": "A",
                            "ttl": 300,
                            "content": "192.0.2.2",
                        }
                    ],
                    "posts": [
                        {"name": "new.example.com", "type": "A", "ttl": 300, "content": "192.0.2.1"}
                    ],
                },
                timeout=10.0,
            )

    def test_upsert_without_existing_record_posts(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        changes = [
            Change(
                ChangeAction.UPSERT,
                RecordSet(name="www.example.com.", type="TXT", ttl=60, records=("hello",)),
            )
        ]

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "post"
        ) as mock_post:
            mock_get.return_value = mock_response(list_payload([]))
            mock_post.return_value = mock_response({"success": True, "errors": []})

            provider.apply_change_batch(ZONE_ID, changes)

            payload = mock_post.call_args.kwargs["json"]
            assert "puts" not in payload
            assert payload["posts"] == [
                {"name": "www.example.com", "type": "TXT", "ttl": 60, "content": "hello"}
            ]

    def test_alias_record_set_is_rejected(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        changes = [
            Change(
                ChangeAction.CREATE,
                RecordSet(
                    name="alias.example.com.",
                    type="A",
                    alias_target=AliasTarget("target.example.com.", ZONE_ID, False),
                ),
            )
        ]

        with patch.object(provider._session, "post") as mock_post:
            with pytest.raises(ProviderCallError):
                provider.apply_change_batch(ZONE_ID, changes)

            mock_post.assert_not_called()

    def test_batch_failure_raises_with_zone(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        changes = [
            Change(
                ChangeAction.CREATE,
                RecordSet(name="new.example.com.", type="A", ttl=300, records=("192.0.2.1",)),
            )
        ]

        with patch.object(provider._session, "post") as mock_post:
            mock_post.side_effect = requests.exceptions.HTTPError("500 Server Error")

            with pytest.raises(ProviderCallError) as excinfo:
                provider.apply_change_batch(ZONE_ID, changes)

            assert excinfo.value.zone_id == ZONE_ID

    def test_malformed_mx_value_raises_before_submit(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        changes = [
            Change(
                ChangeAction.CREATE,
                RecordSet(name="example.com.", type="MX", ttl=300, records=("mail.example.com",)),
            )
        ]

        with patch.object(provider._session, "post") as mock_post:
            with pytest.raises(ProviderCallError, match="malformed MX") as excinfo:
                provider.apply_change_batch(ZONE_ID, changes)

            assert excinfo.value.zone_id == ZONE_ID
            mock_post.assert_not_called()

    def test_explicit_automatic_ttl_is_rejected(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        changes = [
            Change(
                ChangeAction.CREATE,
                RecordSet(name="new.example.com.", type="A", ttl=1, records=("192.0.2.1",)),
            )
        ]

        with patch.object(provider._session, "post") as mock_post:
            with pytest.raises(ProviderCallError, match="use 0"):
                provider.apply_change_batch(ZONE_ID, changes)

            mock_post.assert_not_called()


# =============================================================================
# Convergence
# =============================================================================


class TestCloudflareConvergence:
    """Automatic TTL round-trips through the Converger."""

    def test_zero_ttl_is_written_as_automatic(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        intent = RecordIntent(record_class="A", ttl=0, rdata="192.0.2.1")

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "post"
        ) as mock_post:
            mock_get.return_value = mock_response(list_payload([]))
            mock_post.return_value = mock_response({"success": True, "errors": []})

            Converger(provider).converge(ZONE_ID, "example.com", ["www"], intent)

            payload = mock_post.call_args.kwargs["json"]
            assert payload["posts"] == [
                {"name": "www.example.com", "type": "A", "ttl": 1, "content": "192.0.2.1"}
            ]

    def test_automatic_ttl_reads_back_as_converged(self) -> None:
        provider = CloudflareProvider(api_token="token", url=URL)
        intent = RecordIntent(record_class="A", ttl=0, rdata="192.0.2.1")
        live = [
            {"id": "1", "name": "www.example.com", "type": "A", "content": "192.0.2.1", "ttl": 1}
        ]

        with patch.object(provider._session, "get") as mock_get, patch.object(
            provider._session, "post"
        ) as mock_post:
            mock_get.return_value = mock_response(list_payload(live))

            changes = Converger(provider).converge(ZONE_ID, "example.com", ["www"], intent)

            assert changes == []
            mock_post.assert_not_called()
