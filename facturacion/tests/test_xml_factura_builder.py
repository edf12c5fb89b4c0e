# facturacion/tests/test_xml_factura_builder.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from decimal import Decimal

from django.test import SimpleTestCase, TestCase
from lxml import etree

from facturacion.models import FacturaDetalle, FacturaDetalleImpuesto
from facturacion.services.sri.clave_acceso import validar_clave_acceso
from facturacion.services.sri.xml_factura_builder import build_factura_xml, format_decimal
from facturacion.tests.utils import crear_configuracion, crear_factura


class FormatDecimalTests(SimpleTestCase):
    def test_redondeo_half_up(self):
        self.assertEqual(format_decimal(Decimal("2.285")), "2.29")
        self.assertEqual(format_decimal(Decimal("2.284")), "2.28")
        self.assertEqual(format_decimal("1.005"), "1.01")

    def test_valores_vacios(self):
        self.assertEqual(format_decimal(None), "0.00")
        self.assertEqual(format_decimal(""), "0.00")
        self.assertEqual(format_decimal(7), "7.00")


class BuildFacturaXmlTests(TestCase):
    def setUp(self) -> None:
        self.config = crear_configuracion()
        self.factura = crear_factura(
            self.config,
            info_adicional=[
                {"nombre": "Email", "valor": "juan@example.com"},
                {"nombre": "Vacío", "valor": ""},
            ],
        )

    def _parse(self, xml: str) -> etree._Element:
        return etree.fromstring(xml.encode("utf-8"))

    def test_raiz_y_declaracion(self):
        xml = build_factura_xml(self.factura)
        self.assertTrue(xml.startswith("<?xml"))
        root = self._parse(xml)
        self.assertEqual(root.tag, "factura")
        self.assertEqual(root.get("id"), "comprobante")
        self.assertEqual(root.get("version"), "1.1.0")
        self.assertEqual(
            [child.tag for child in root],
            ["infoTributaria", "infoFactura", "detalles", "infoAdicional"],
        )

    def test_genera_clave_en_memoria_sin_guardar(self):
        self.assertIsNone(self.factura.clave_acceso)
        xml = build_factura_xml(self.factura)

        clave = self._parse(xml).findtext("infoTributaria/claveAcceso")
        self.assertEqual(self.factura.clave_acceso, clave)
        self.assertTrue(validar_clave_acceso(clave))

        self.factura.refresh_from_db()
        self.assertIsNone(self.factura.clave_acceso)

    def test_usa_clave_existente(self):
        self.factura.clave_acceso = "1" * 49
        root = self._parse(build_factura_xml(self.factura, generar_clave=lambda f: "no-debe-usarse"))
        self.assertEqual(root.findtext("infoTributaria/claveAcceso"), "1" * 49)

    def test_info_tributaria(self):
        root = self._parse(build_factura_xml(self.factura))
        info = root.find("infoTributaria")
        self.assertEqual(info.findtext("ambiente"), "1")
        self.assertEqual(info.findtext("ruc"), "1790012345001")
        self.assertEqual(info.findtext("codDoc"), "01")
        self.assertEqual(info.findtext("estab"), "001")
        self.assertEqual(info.findtext("ptoEmi"), "001")
        self.assertEqual(info.findtext("secuencial"), "000000123")

    def test_info_factura_y_totales(self):
        root = self._parse(build_factura_xml(self.factura))
        info = root.find("infoFactura")
        self.assertEqual(info.findtext("fechaEmision"), "15/01/2025")
        self.assertIsNone(info.find("contribuyenteEspecial"))
        self.assertEqual(info.findtext("obligadoContabilidad"), "NO")
        self.assertEqual(info.findtext("tipoIdentificacionComprador"), "05")
        self.assertEqual(info.findtext("totalSinImpuestos"), "19.00")
        self.assertEqual(info.findtext("totalDescuento"), "1.00")
        self.assertEqual(info.findtext("propina"), "0.00")
        self.assertEqual(info.findtext("importeTotal"), "21.28")
        self.assertEqual(info.findtext("moneda"), "DOLAR")

        total = info.find("totalConImpuestos/totalImpuesto")
        self.assertEqual(total.findtext("codigo"), "2")
        self.assertEqual(total.findtext("codigoPorcentaje"), "2")
        self.assertEqual(total.findtext("baseImponible"), "19.00")
        self.assertEqual(total.findtext("valor"), "2.28")

    def test_detalle_con_dos_decimales(self):
        root = self._parse(build_factura_xml(self.factura))
        detalle = root.find("detalles/detalle")
        self.assertEqual(detalle.findtext("cantidad"), "2.00")
        self.assertEqual(detalle.findtext("precioUnitario"), "10.00")
        self.assertEqual(detalle.findtext("descuento"), "1.00")
        self.assertEqual(detalle.findtext("precioTotalSinImpuesto"), "19.00")
        self.assertEqual(detalle.findtext("impuestos/impuesto/tarifa"), "12.00")

    def test_contribuyente_especial_si_existe(self):
        self.factura.contribuyente_especial = "5368"
        root = self._parse(build_factura_xml(self.factura))
        self.assertEqual(root.findtext("infoFactura/contribuyenteEspecial"), "5368")

    def test_info_adicional_omite_vacios(self):
        root = self._parse(build_factura_xml(self.factura))
        campos = root.findall("infoAdicional/campoAdicional")
        self.assertEqual(len(campos), 1)
        self.assertEqual(campos[0].get("nombre"), "Email")
        self.assertEqual(campos[0].text, "juan@example.com")

    def test_sin_info_adicional_no_genera_nodo(self):
        self.factura.info_adicional = []
        root = self._parse(build_factura_xml(self.factura))
        self.assertIsNone(root.find("infoAdicional"))

    def test_total_con_impuestos_agrupa_por_codigo(self):
        detalle = FacturaDetalle.objects.create(
            factura=self.factura,
            orden=2,
            codigo_principal="P002",
            descripcion="Otro",
            cantidad=Decimal("1"),
            precio_unitario=Decimal("5.00"),
            descuento=Decimal("0"),
            precio_total_sin_impuesto=Decimal("5.00"),
        )
        FacturaDetalleImpuesto.objects.create(
            detalle=detalle,
            codigo="2",
            codigo_porcentaje="2",
            tarifa=Decimal("12.00"),
            base_imponible=Decimal("5.00"),
            valor=Decimal("0.60"),
        )
        root = self._parse(build_factura_xml(self.factura))
        totales = root.findall("infoFactura/totalConImpuestos/totalImpuesto")
        self.assertEqual(len(totales), 1)
        self.assertEqual(totales[0].findtext("baseImponible"), "24.00")
        self.assertEqual(totales[0].findtext("valor"), "2.88")

    def test_fecha_invalida_usa_la_de_la_clave(self):
        self.factura.fecha_emision = "sin fecha"
        self.factura.clave_acceso = "20022025" + "0" * 41
        with self.assertLogs("facturacion.sri", level="WARNING"):
            root = self._parse(build_factura_xml(self.factura))
        self.assertEqual(root.findtext("infoFactura/fechaEmision"), "20/02/2025")
