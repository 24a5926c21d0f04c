"""
Tests para el cliente HTTP de la Sefin Nacional (transporte simulado)
"""
import json
import os
from unittest.mock import MagicMock

import pytest
import requests

from app.nfse_client.envelope import DPS_FIELD, EVENT_FIELD, NFSE_FIELD, compress_and_encode, decode_and_decompress
from app.nfse_client.exceptions import EnvelopeError, IdentifierError, TransportError
from app.nfse_client.http_client import NfseClient, RequestsTransport, parse_response
from app.nfse_client.identifiers import build_dps_id
from app.nfse_client.models import Environment
from app.nfse_client.xmldsig_signer import verify_signed_xml

ACCESS_KEY = "42169092200000000000100000000000000001260100000001"
OTHER_ACCESS_KEY = "42169092200000000000100000000000000003260100000003"


class FakeTransport:
    def __init__(self, response: bytes = b"{}"):
        self.response = response
        self.calls = []
        self.closed = False

    def send(self, method, path, body=None, content_type="application/json"):
        self.calls.append((method, path, body, content_type))
        return self.response

    def close(self):
        self.closed = True


@pytest.fixture
def transport():
    return FakeTransport(json.dumps({"chaveAcesso": ACCESS_KEY}).encode())


@pytest.fixture
def client(transport, key_material):
    return NfseClient(transport, key_material, Environment.HOMOLOGATION, "MiSistema/1.0.0")


def _response(status_code=200, content=b"{}"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = content
    resp.text = content.decode()
    return resp


def test_emit_posts_signed_envelope(client, transport, declaration):
    result = client.emit(declaration)

    assert result == {"chaveAcesso": ACCESS_KEY}
    method, path, body, content_type = transport.calls[0]
    assert (method, path, content_type) == ("POST", "/nfse", "application/json")

    payload = json.loads(body)
    assert list(payload) == [DPS_FIELD]
    assert verify_signed_xml(decode_and_decompress(payload[DPS_FIELD])) is True


def test_cancel_posts_event(client, transport):
    client.cancel(ACCESS_KEY, "Erro na emissão", 1)

    method, path, body, _ = transport.calls[0]
    assert (method, path) == ("POST", f"/nfse/{ACCESS_KEY}/eventos")
    assert list(json.loads(body)) == [EVENT_FIELD]


def test_cancel_rejects_bad_access_key(client, transport):
    with pytest.raises(IdentifierError):
        client.cancel("123", "motivo", 9)
    assert transport.calls == []


def test_queries(client, transport):
    client.get_nfse(ACCESS_KEY)
    client.get_dps("DPS421690920000000000010000900000000000000001")
    client.get_events(ACCESS_KEY)
    client.get_events(ACCESS_KEY, "101101")

    assert [(m, p, b) for m, p, b, _ in transport.calls] == [
        ("GET", f"/nfse/{ACCESS_KEY}", None),
        ("GET", "/dps/DPS421690920000000000010000900000000000000001", None),
        ("GET", f"/nfse/{ACCESS_KEY}/eventos", None),
        ("GET", f"/nfse/{ACCESS_KEY}/eventos/101101", None),
    ]


def test_download_xml(key_material, tmp_path):
    xml = b"<NFSe>autorizada</NFSe>"
    transport = FakeTransport(json.dumps({NFSE_FIELD: compress_and_encode(xml)}).encode())
    client = NfseClient(transport, key_material, 2, "1.0")
    destination = tmp_path / "nfse.xml"

    assert client.download_xml(ACCESS_KEY, str(destination)) == xml
    assert destination.read_bytes() == xml


def test_download_xml_without_document(client):
    with pytest.raises(EnvelopeError):
        client.download_xml(ACCESS_KEY)


def test_client_context_manager_closes_transport(transport, key_material):
    with NfseClient(transport, key_material, 2, "1.0"):
        pass
    assert transport.closed


@pytest.mark.parametrize("content, expected", [
    (b"", {}),
    (b"   ", {}),
    (b'{"a": 1}', {"a": 1}),
    (b"<erro>xml</erro>", {"raw": "<erro>xml</erro>"}),
    (b"[1, 2]", {"raw": "[1, 2]"}),
])
def test_parse_response(content, expected):
    assert parse_response(content) == expected


def test_requests_transport_mtls_and_cleanup(key_material):
    session = MagicMock()
    session.request.return_value = _response(200, b'{"ok": true}')

    transport = RequestsTransport("https://sefin.local/api/", key_material, (5, 60), session=session)
    cert_path, key_path = session.cert
    assert os.path.exists(cert_path) and os.path.exists(key_path)

    with transport:
        content = transport.send("POST", "/nfse", b"{}")

    assert content == b'{"ok": true}'
    args, kwargs = session.request.call_args
    assert args == ("POST", "https://sefin.local/api/nfse")
    assert kwargs["timeout"] == (5, 60)
    assert kwargs["headers"]["Content-Type"] == "application/json; charset=utf-8"
    assert kwargs["headers"]["Accept"] == "application/json"

    session.close.assert_called_once()
    assert not os.path.exists(cert_path)
    assert not os.path.exists(key_path)


def test_requests_transport_http_error():
    session = MagicMock()
    session.request.return_value = _response(400, b'{"erros": [{"Codigo": "E0001"}]}')
    transport = RequestsTransport("https://sefin.local", session=session)

    with pytest.raises(TransportError) as exc_info:
        transport.send("GET", f"/nfse/{ACCESS_KEY}")

    assert exc_info.value.status_code == 400
    assert "E0001" in exc_info.value.body
    headers = session.request.call_args.kwargs["headers"]
    assert "Content-Type" not in headers


def test_requests_transport_connection_error():
    session = MagicMock()
    session.request.side_effect = requests.ConnectionError("sem rede")
    transport = RequestsTransport("https://sefin.local", session=session)

    with pytest.raises(TransportError, match="conexión") as exc_info:
        transport.send("GET", "/dps/1")

    assert exc_info.value.status_code is None


class RoutingTransport(FakeTransport):
    """Responde por ruta; las rutas sin respuesta devuelven 404"""

    def __init__(self, routes):
        super().__init__()
        self.routes = routes

    def send(self, method, path, body=None, content_type="application/json"):
        self.calls.append((method, path, body, content_type))
        if path not in self.routes:
            raise TransportError(f"Error HTTP 404 en {method} {path}", status_code=404, body="")
        return self.routes[path]


def _dps_ids(numbers):
    return {n: build_dps_id("4216909", "00.000.000/0001-00", "900", n) for n in numbers}


def test_list_by_range_skips_missing_numbers(key_material):
    ids = _dps_ids([1, 2, 3])
    transport = RoutingTransport({
        f"/dps/{ids[1]}": json.dumps({"chaveAcesso": ACCESS_KEY}).encode(),
        f"/dps/{ids[3]}": json.dumps({"chaveAcesso": OTHER_ACCESS_KEY}).encode(),
    })
    client = NfseClient(transport, key_material, 2, "1.0")

    result = client.list_by_range("4216909", "00.000.000/0001-00", "900", 1, 3)

    assert [(r["number"], r["dps_id"], r["access_key"]) for r in result] == [
        (1, ids[1], ACCESS_KEY),
        (3, ids[3], OTHER_ACCESS_KEY),
    ]
    assert [p for _, p, _, _ in transport.calls] == [f"/dps/{ids[n]}" for n in (1, 2, 3)]


def test_list_by_range_ignores_dps_without_access_key(key_material):
    ids = _dps_ids([5])
    transport = RoutingTransport({f"/dps/{ids[5]}": b'{"situacao": "pendente"}'})
    client = NfseClient(transport, key_material, 2, "1.0")

    assert client.list_by_range("4216909", "00000000000100", "900", 5, 5) == []


def test_list_by_range_with_nfse(key_material):
    ids = _dps_ids([1, 2])
    transport = RoutingTransport({
        f"/dps/{ids[1]}": json.dumps({"chaveAcesso": ACCESS_KEY}).encode(),
        f"/dps/{ids[2]}": json.dumps({"chaveAcesso": OTHER_ACCESS_KEY}).encode(),
        f"/nfse/{ACCESS_KEY}": b'{"nfseXmlGZipB64": "abc"}',
    })
    client = NfseClient(transport, key_material, 2, "1.0")

    first, second = client.list_by_range("4216909", "00000000000100", "900", 1, 2, include_nfse=True)

    assert first["nfse"] == {"nfseXmlGZipB64": "abc"}
    assert "error" not in first
    assert "nfse" not in second
    assert "404" in second["error"]


def test_list_by_range_does_not_swallow_other_errors(key_material):
    transport = MagicMock()
    transport.send.side_effect = RuntimeError("falla inesperada")
    client = NfseClient(transport, key_material, 2, "1.0")

    with pytest.raises(RuntimeError):
        client.list_by_range("4216909", "00000000000100", "900", 1, 2)
