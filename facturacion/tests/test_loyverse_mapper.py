# facturacion/tests/test_loyverse_mapper.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from decimal import Decimal

from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from facturacion.models import Factura
from facturacion.services.loyverse.mapper import (
    MapeoError,
    codigo_porcentaje_iva,
    crear_factura_desde_recibo,
    mapear_recibo,
    tipo_identificacion,
)
from facturacion.services.validacion import validar_factura
from facturacion.tests.utils import CLIENTE_LOYVERSE, crear_configuracion, recibo_loyverse


class TablasTests(SimpleTestCase):
    def test_codigo_porcentaje_iva(self):
        self.assertEqual(codigo_porcentaje_iva(Decimal("12")), "2")
        self.assertEqual(codigo_porcentaje_iva(Decimal("15.00")), "4")
        self.assertEqual(codigo_porcentaje_iva(Decimal("0")), "0")

    def test_tarifa_desconocida(self):
        with self.assertLogs("facturacion.loyverse", level="WARNING"):
            self.assertEqual(codigo_porcentaje_iva(Decimal("7")), "7")

    def test_tipo_identificacion(self):
        self.assertEqual(tipo_identificacion("1790012345001"), "04")
        self.assertEqual(tipo_identificacion("1710034065"), "05")
        self.assertEqual(tipo_identificacion("9999999999999"), "07")
        self.assertEqual(tipo_identificacion("AB123456"), "06")


class MapearReciboTests(TestCase):
    def setUp(self) -> None:
        self.config = crear_configuracion()

    def test_montos_y_cabecera(self):
        mapeada = mapear_recibo(recibo_loyverse(), CLIENTE_LOYVERSE, self.config)
        cab = mapeada.cabecera

        self.assertEqual(cab["loyverse_id"], "rcp-0001")
        self.assertEqual(cab["secuencial"], "000011001")
        self.assertEqual(cab["fecha_emision"], "15/01/2025")
        self.assertEqual(cab["ambiente"], "1")
        self.assertEqual(cab["tipo_identificacion_comprador"], "05")
        self.assertEqual(cab["razon_social_comprador"], "Juan Perez")
        self.assertEqual(cab["direccion_comprador"], "Calle 1, Quito")
        self.assertEqual(cab["total_sin_impuestos"], Decimal("19.00"))
        self.assertEqual(cab["total_descuento"], Decimal("1.00"))
        self.assertEqual(cab["importe_total"], Decimal("21.28"))

        linea = mapeada.lineas[0]
        self.assertEqual(linea.descripcion, "Café - Grande")
        self.assertEqual(linea.codigo_principal, "CAF-01")
        self.assertEqual(linea.precio_total_sin_impuesto, Decimal("19.00"))
        self.assertEqual(linea.impuestos[0].codigo_porcentaje, "2")
        self.assertEqual(linea.impuestos[0].valor, Decimal("2.28"))

    def test_tarifa_por_defecto_de_la_configuracion(self):
        item = dict(recibo_loyverse()["line_items"][0])
        item.pop("line_taxes")
        self.config.impuesto_iva = Decimal("15.00")

        mapeada = mapear_recibo(recibo_loyverse(line_items=[item], total_money=None), CLIENTE_LOYVERSE, self.config)

        impuesto = mapeada.lineas[0].impuestos[0]
        self.assertEqual(impuesto.codigo_porcentaje, "4")
        self.assertEqual(impuesto.valor, Decimal("2.85"))
        self.assertEqual(mapeada.cabecera["importe_total"], Decimal("21.85"))

    def test_fecha_imposible_usa_la_fecha_actual(self):
        with self.assertLogs("facturacion.loyverse", level="WARNING"):
            mapeada = mapear_recibo(
                recibo_loyverse(created_at="2025-02-30T10:00:00.000Z"), CLIENTE_LOYVERSE, self.config
            )
        self.assertEqual(mapeada.cabecera["fecha_emision"], timezone.localdate().strftime("%d/%m/%Y"))

    def test_propina_en_el_total(self):
        mapeada = mapear_recibo(recibo_loyverse(tip=2, total_money=23.28), CLIENTE_LOYVERSE, self.config)
        self.assertEqual(mapeada.cabecera["propina"], Decimal("2.00"))
        self.assertEqual(mapeada.cabecera["importe_total"], Decimal("23.28"))

    def test_total_distinto_al_de_loyverse_registra_warning(self):
        with self.assertLogs("facturacion.loyverse", level="WARNING"):
            mapeada = mapear_recibo(recibo_loyverse(total_money=25), CLIENTE_LOYVERSE, self.config)
        self.assertEqual(mapeada.cabecera["importe_total"], Decimal("21.28"))

    def test_agrupa_totales_por_impuesto(self):
        items = recibo_loyverse()["line_items"] * 2
        mapeada = mapear_recibo(recibo_loyverse(line_items=items, total_money=None), CLIENTE_LOYVERSE, self.config)
        totales = mapeada.totales_por_impuesto()
        self.assertEqual(len(totales), 1)
        self.assertEqual(totales[0].base_imponible, Decimal("38.00"))
        self.assertEqual(totales[0].valor, Decimal("4.56"))

    def test_sin_cliente(self):
        with self.assertRaisesMessage(MapeoError, "no tiene un cliente asociado"):
            mapear_recibo(recibo_loyverse(), None, self.config)

    def test_cliente_sin_identificacion(self):
        with self.assertRaises(MapeoError):
            mapear_recibo(recibo_loyverse(), {**CLIENTE_LOYVERSE, "customer_code": ""}, self.config)

    def test_reembolso(self):
        with self.assertRaises(MapeoError):
            mapear_recibo(recibo_loyverse(receipt_type="REFUND"), CLIENTE_LOYVERSE, self.config)

    def test_sin_lineas(self):
        with self.assertRaises(MapeoError):
            mapear_recibo(recibo_loyverse(line_items=[]), CLIENTE_LOYVERSE, self.config)


class CrearFacturaDesdeReciboTests(TestCase):
    def setUp(self) -> None:
        self.config = crear_configuracion()

    def test_crea_factura_pendiente_valida(self):
        factura, creada = crear_factura_desde_recibo(recibo_loyverse(), CLIENTE_LOYVERSE, self.config)

        self.assertTrue(creada)
        self.assertEqual(factura.estado, Factura.Estado.PENDIENTE)
        self.assertEqual(factura.configuracion, self.config)
        self.assertEqual(factura.detalles.count(), 1)
        self.assertEqual(factura.detalles.get().impuestos.count(), 1)
        self.assertEqual(factura.historial_estados[0]["estado"], Factura.Estado.PENDIENTE)
        self.assertEqual(
            [c["nombre"] for c in factura.info_adicional],
            ["Email", "Teléfono", "Recibo"],
        )
        self.assertEqual(validar_factura(factura), [])

    def test_recibo_repetido_no_duplica(self):
        primera, _ = crear_factura_desde_recibo(recibo_loyverse(), CLIENTE_LOYVERSE, self.config)
        segunda, creada = crear_factura_desde_recibo(recibo_loyverse(), CLIENTE_LOYVERSE, self.config)

        self.assertFalse(creada)
        self.assertEqual(primera.pk, segunda.pk)
        self.assertEqual(Factura.objects.count(), 1)
