"""Tests for payload normalization and event classification"""
import json
from urllib.parse import urlencode

import pytest

from models.entitlements import AccessState, EventKind
from utils.eduzz import (
    ACCESS_TRANSITIONS,
    MalformedPayload,
    PayloadShape,
    access_for,
    classify_event,
    decode_body,
    normalize_payload,
    synthesize_event_id,
)


class TestDecodeBody:
    def test_json_by_content_type(self):
        assert decode_body(b'{"a": 1}', "application/json; charset=utf-8") == {"a": 1}

    def test_json_sniffed_without_content_type(self):
        assert decode_body(b'  {"a": "b"}') == {"a": "b"}

    def test_form_fields_flattened(self):
        body = b"edz_cli_email=a%40b.com&edz_fat_status=3"
        assert decode_body(body, "application/x-www-form-urlencoded") == {
            "edz_cli_email": "a@b.com",
            "edz_fat_status": "3",
        }

    def test_invalid_json_is_empty(self):
        assert decode_body(b"{broken", "application/json") == {}

    def test_json_array_is_empty(self):
        assert decode_body(b"[1, 2]") == {}

    def test_empty_body(self):
        assert decode_body(b"") == {}


class TestEnvelopeShape:
    def test_full_envelope(self):
        payload = {
            "id": "evt-9",
            "event": "myeduzz.invoice_paid",
            "sentDate": "2026-10-01T12:00:00Z",
            "data": {
                "buyer": {"email": "  Ana@Example.COM "},
                "invoice": {"id": 123, "status": "paid"},
                "product": {"id": "p-1", "title": "Banco Anual"},
            },
        }
        event = normalize_payload(payload, b"raw")
        assert event.shape == PayloadShape.ENVELOPE.value
        assert event.event_id == "evt-9"
        assert event.event == "myeduzz.invoice_paid"
        assert event.email == "ana@example.com"
        assert event.invoice_id == "123"
        assert event.invoice_status == "paid"
        assert event.product_id == "p-1"
        assert event.product_title == "Banco Anual"
        assert event.raw == payload

    @pytest.mark.parametrize("path", ["buyer", "customer", "client", "user", "student"])
    def test_email_candidate_paths(self, path):
        payload = {"id": "e", "event": "invoice_paid", "data": {path: {"email": "x@y.com"}}}
        assert normalize_payload(payload).email == "x@y.com"

    def test_buyer_email_takes_priority(self):
        payload = {
            "id": "e",
            "event": "invoice_paid",
            "data": {"customer": {"email": "second@y.com"}, "buyer": {"email": "first@y.com"}},
        }
        assert normalize_payload(payload).email == "first@y.com"

    def test_flat_data_fields(self):
        payload = {
            "id": "e",
            "event": "invoice_opened",
            "data": {"email": "x@y.com", "invoiceId": "inv-1", "productId": "p", "productTitle": "T", "status": "open"},
        }
        event = normalize_payload(payload)
        assert (event.invoice_id, event.product_id, event.product_title, event.invoice_status) == ("inv-1", "p", "T", "open")

    def test_status_preserved_uninterpreted(self):
        payload = {"id": "e", "event": "x", "data": {"email": "x@y.com", "invoice": {"status": "Paga"}}}
        assert normalize_payload(payload).invoice_status == "Paga"

    def test_envelope_without_email_keeps_envelope_fields(self):
        payload = {"id": "evt-2", "event": "invoice_paid", "data": {"invoice": {"id": "i"}}}
        event = normalize_payload(payload)
        assert event.email == ""
        assert event.shape == "envelope"
        assert event.event_id == "evt-2"

    def test_non_email_string_ignored(self):
        payload = {"id": "e", "event": "invoice_paid", "data": {"buyer": {"email": "not-an-email"}, "email": "ok@y.com"}}
        assert normalize_payload(payload).email == "ok@y.com"


class TestMessageShape:
    def test_message_object(self):
        payload = {"event": "invoice_paid", "message": {"buyer": {"email": "m@y.com"}, "invoice": {"id": "i1"}}}
        event = normalize_payload(payload, b"body")
        assert event.shape == "message"
        assert event.email == "m@y.com"
        assert event.event == "invoice_paid"
        assert event.invoice_id == "i1"

    def test_message_json_string(self):
        inner = {"id": "evt-inner", "event": "invoice_canceled", "data": {"customer": {"email": "j@y.com"}}}
        event = normalize_payload({"message": json.dumps(inner)})
        assert event.shape == "message"
        assert event.event_id == "evt-inner"
        assert event.event == "invoice_canceled"
        assert event.email == "j@y.com"

    def test_message_query_string(self):
        inner = urlencode({"edz_cli_email": "q@y.com", "edz_fat_status": "3", "edz_fat_cod": "777"})
        event = normalize_payload({"id": "outer-1", "message": inner})
        assert event.shape == "message"
        assert event.email == "q@y.com"
        assert event.invoice_status == "3"
        assert event.invoice_id == "777"
        assert event.event_id == "outer-1"

    def test_unparseable_message_falls_through(self):
        event = normalize_payload({"message": "{oops", "email": "f@y.com"})
        assert event.shape == "flat"
        assert event.email == "f@y.com"


class TestLegacyAndFlatShapes:
    def test_legacy_form_fields(self):
        payload = {
            "edz_cli_email": "Legacy@Y.com",
            "edz_fat_cod": "9001",
            "edz_fat_status": "3",
            "edz_cnt_cod": "55",
            "edz_cnt_titulo": "Curso",
        }
        event = normalize_payload(payload, b"edz_cli_email=...")
        assert event.shape == "legacy_form"
        assert event.email == "legacy@y.com"
        assert event.invoice_id == "9001"
        assert event.invoice_status == "3"
        assert event.product_id == "55"
        assert event.product_title == "Curso"

    def test_flat_object(self):
        event = normalize_payload({"type": "invoice_paid", "email": "flat@y.com", "status": "paid"})
        assert event.shape == "flat"
        assert event.event == "invoice_paid"
        assert event.email == "flat@y.com"

    def test_later_shape_wins_when_earlier_has_no_email(self):
        payload = {"event": "invoice_paid", "data": {}, "edz_cli_email": "late@y.com"}
        event = normalize_payload(payload)
        assert event.shape == "legacy_form"
        assert event.email == "late@y.com"


class TestEventIds:
    def test_synthesized_id_is_stable_per_body(self):
        body = b"edz_cli_email=a%40b.com"
        first = normalize_payload({"edz_cli_email": "a@b.com"}, body)
        second = normalize_payload({"edz_cli_email": "a@b.com"}, body)
        assert first.event_id == second.event_id == synthesize_event_id(body)
        assert first.event_id.startswith("body_")

    def test_different_bodies_get_different_ids(self):
        assert synthesize_event_id(b"a") != synthesize_event_id(b"b")

    def test_slashes_removed_from_provider_ids(self):
        event = normalize_payload({"id": "a/b", "event": "x", "data": {"email": "x@y.com"}})
        assert "/" not in event.event_id


class TestMalformed:
    @pytest.mark.parametrize("payload", [{}, [], "text", None])
    def test_non_object_payloads(self, payload):
        with pytest.raises(MalformedPayload):
            normalize_payload(payload)


class TestClassification:
    @pytest.mark.parametrize("event,status,expected", [
        ("invoice_paid", "", EventKind.INVOICE_PAID),
        ("myeduzz.invoice_paid", "", EventKind.INVOICE_PAID),
        ("INVOICE_PAID", "", EventKind.INVOICE_PAID),
        ("", "paid", EventKind.INVOICE_PAID),
        ("", "Paga", EventKind.INVOICE_PAID),
        ("", "3", EventKind.INVOICE_PAID),
        ("invoice_opened", "", EventKind.INVOICE_OPENED),
        ("", "opened", EventKind.INVOICE_OPENED),
        ("", "aberta", EventKind.INVOICE_OPENED),
        ("", "1", EventKind.INVOICE_OPENED),
        ("invoice_canceled", "", EventKind.INVOICE_CANCELED),
        ("", "cancelled", EventKind.INVOICE_CANCELED),
        ("", "refunded", EventKind.INVOICE_CANCELED),
        ("", "chargeback", EventKind.INVOICE_CANCELED),
        ("", "reembolsado", EventKind.INVOICE_CANCELED),
        ("", "4", EventKind.INVOICE_CANCELED),
        ("", "7", EventKind.INVOICE_CANCELED),
        ("invoice_expired", "", EventKind.UNKNOWN),
        ("", "", EventKind.UNKNOWN),
        ("", "99", EventKind.UNKNOWN),
    ])
    def test_event_or_status(self, event, status, expected):
        assert classify_event(event, status) is expected

    @pytest.mark.parametrize("event,status,expected", [
        ("", "aguardando pagamento", EventKind.INVOICE_OPENED),
        ("invoice_opened", "Aguardando Pagamento", EventKind.INVOICE_OPENED),
        ("", "pagamento recusado", EventKind.UNKNOWN),
        ("invoice_unpaid", "", EventKind.UNKNOWN),
        ("", "unpaid", EventKind.UNKNOWN),
        ("", "não pago", EventKind.UNKNOWN),
        ("", "not paid", EventKind.UNKNOWN),
        ("", "pagamento", EventKind.UNKNOWN),
    ])
    def test_paid_lookalikes_never_grant_access(self, event, status, expected):
        kind = classify_event(event, status)
        assert kind is expected
        assert access_for(kind).active is False

    def test_paid_supersedes_opened(self):
        assert classify_event("invoice_opened", "paid") is EventKind.INVOICE_PAID

    def test_cancellation_event_wins_over_paid_status(self):
        assert classify_event("invoice_canceled", "paid") is EventKind.INVOICE_CANCELED

    def test_paid_event_wins_over_canceled_status(self):
        assert classify_event("invoice_paid", "canceled") is EventKind.INVOICE_PAID


class TestAccessTransitions:
    def test_every_kind_has_exactly_one_row(self):
        assert set(ACCESS_TRANSITIONS) == set(EventKind)
        assert len(ACCESS_TRANSITIONS) == len(EventKind)

    @pytest.mark.parametrize("kind,active,pending", [
        (EventKind.INVOICE_OPENED, False, True),
        (EventKind.INVOICE_PAID, True, False),
        (EventKind.INVOICE_CANCELED, False, False),
        (EventKind.UNKNOWN, False, True),
    ])
    def test_table(self, kind, active, pending):
        assert access_for(kind) == AccessState(active=active, pending=pending)

    def test_never_active_and_pending(self):
        for state in ACCESS_TRANSITIONS.values():
            assert not (state.active and state.pending)
