# facturacion/tests/test_loyverse_client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import datetime, timezone as dt_timezone
from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase

from facturacion.services.loyverse.client import LoyverseClient, LoyverseError


def _respuesta(data=None, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.json.return_value = data or {}
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


class LoyverseClientTests(SimpleTestCase):
    def setUp(self) -> None:
        self.session = MagicMock()
        self.session.headers = {}
        self.cliente = LoyverseClient("tok-123", base_url="https://api.test/v1.0/", session=self.session)

    def test_token_obligatorio(self):
        with self.assertRaises(LoyverseError):
            LoyverseClient("", session=MagicMock())

    def test_cabecera_bearer(self):
        self.assertEqual(self.session.headers["Authorization"], "Bearer tok-123")

    def test_listar_recibos_sigue_el_cursor(self):
        self.session.get.side_effect = [
            _respuesta({"receipts": [{"id": "a"}, {"id": "b"}], "cursor": "c1"}),
            _respuesta({"receipts": [{"id": "c"}]}),
        ]
        desde = datetime(2025, 1, 15, 10, 0, tzinfo=dt_timezone.utc)
        hasta = datetime(2025, 1, 15, 11, 0, tzinfo=dt_timezone.utc)

        recibos = self.cliente.listar_recibos(desde, hasta)

        self.assertEqual([r["id"] for r in recibos], ["a", "b", "c"])
        primera, segunda = self.session.get.call_args_list
        self.assertEqual(primera.args[0], "https://api.test/v1.0/receipts")
        self.assertEqual(primera.kwargs["params"]["created_at_min"], "2025-01-15T10:00:00.000Z")
        self.assertEqual(primera.kwargs["params"]["created_at_max"], "2025-01-15T11:00:00.000Z")
        self.assertEqual(segunda.kwargs["params"]["cursor"], "c1")
        self.assertNotIn("created_at_min", segunda.kwargs["params"])

    def test_obtener_cliente(self):
        self.session.get.return_value = _respuesta({"id": "cus-1", "customer_code": "1710034065"})

        cliente = self.cliente.obtener_cliente("cus-1")

        self.assertEqual(cliente["customer_code"], "1710034065")
        self.assertEqual(self.session.get.call_args.args[0], "https://api.test/v1.0/customers/cus-1")

    def test_error_http(self):
        self.session.get.return_value = _respuesta(status=401)
        with self.assertLogs("facturacion.loyverse", level="ERROR"):
            with self.assertRaisesMessage(LoyverseError, "HTTP 401"):
                self.cliente.obtener_recibo("x")

    def test_error_de_red(self):
        self.session.get.side_effect = requests.ConnectionError("sin red")
        with self.assertLogs("facturacion.loyverse", level="ERROR"):
            with self.assertRaises(LoyverseError):
                self.cliente.listar_recibos(datetime(2025, 1, 1, tzinfo=dt_timezone.utc))

    def test_respuesta_no_json(self):
        response = _respuesta()
        response.json.side_effect = ValueError("no json")
        self.session.get.return_value = response
        with self.assertRaises(LoyverseError):
            self.cliente.obtener_recibo("x")
