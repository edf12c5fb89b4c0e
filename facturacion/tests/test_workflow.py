# facturacion/tests/test_workflow.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import timedelta
from typing import List

from django.test import TestCase
from django.utils import timezone

from facturacion.models import Factura
from facturacion.services.sri.client import (
    AUTORIZADO,
    DESCONOCIDO,
    DEVUELTA,
    ERROR,
    RECHAZADO,
    RECIBIDA,
    TIMEOUT,
    ErrorTransporte,
    MensajeSRI,
    RespuestaAutorizacion,
    RespuestaRecepcion,
)
from facturacion.services.sri.clave_acceso import validar_clave_acceso
from facturacion.services.sri.workflow import FacturaWorkflow
from facturacion.tests.utils import crear_configuracion, crear_factura

NUMERO_AUTORIZACION = "1501202501179001234500110010010000001231234567811"


def recepcion(estado: str = RECIBIDA, *mensajes: MensajeSRI, error=None) -> RespuestaRecepcion:
    return RespuestaRecepcion(estado=estado, mensajes=list(mensajes), error=error)


def autorizacion(estado: str = AUTORIZADO, *mensajes: MensajeSRI, comprobante=None, error=None) -> RespuestaAutorizacion:
    autorizada = estado == AUTORIZADO
    return RespuestaAutorizacion(
        estado=estado,
        numero_autorizacion=NUMERO_AUTORIZACION if autorizada else None,
        fecha_autorizacion=timezone.now() if autorizada else None,
        estado_sri="AUTORIZADO" if autorizada else "",
        mensajes=list(mensajes),
        comprobante=comprobante,
        error=error,
    )


def error_red(tipo: str = TIMEOUT) -> ErrorTransporte:
    return ErrorTransporte(tipo=tipo, detalle="timed out", endpoint="https://sri", duracion=60.0)


class ClienteSRIFalso:
    """Devuelve respuestas preparadas y registra las llamadas."""

    def __init__(self, recepciones: List[RespuestaRecepcion] = (), autorizaciones: List[RespuestaAutorizacion] = ()):
        self.recepciones = list(recepciones)
        self.autorizaciones = list(autorizaciones)
        self.enviados: List[str] = []
        self.consultas: List[str] = []

    def enviar_comprobante(self, xml_firmado, clave_acceso=None):
        self.enviados.append(xml_firmado)
        return self.recepciones.pop(0)

    def consultar_autorizacion(self, clave_acceso):
        self.consultas.append(clave_acceso)
        return self.autorizaciones.pop(0)


class FacturaWorkflowTests(TestCase):
    def setUp(self) -> None:
        self.config = crear_configuracion()
        self.factura = crear_factura(self.config)
        self.esperas: List[float] = []

    def _workflow(self, cliente: ClienteSRIFalso) -> FacturaWorkflow:
        return FacturaWorkflow(
            cliente_factory=lambda ambiente: cliente,
            esperar=self.esperas.append,
            espera_autorizacion=3,
        )

    def _estados(self, factura: Factura) -> List[str]:
        return [h["estado"] for h in factura.historial_estados]

    # ------------------------------------------------------------------
    # Camino feliz
    # ------------------------------------------------------------------

    def test_proceso_completo_autorizado(self):
        cliente = ClienteSRIFalso([recepcion()], [autorizacion()])

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertTrue(resultado.success, resultado.message)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.AUTORIZADO)
        self.assertEqual(self._estados(self.factura), ["FIRMADO", "ENVIADO", "AUTORIZADO"])
        self.assertEqual(self.factura.numero_autorizacion, NUMERO_AUTORIZACION)
        self.assertIsNotNone(self.factura.fecha_autorizacion)
        self.assertTrue(validar_clave_acceso(self.factura.clave_acceso))
        self.assertIn("Signature", self.factura.xml_firmado)
        self.assertIn(self.factura.clave_acceso, self.factura.xml_sin_firma)
        self.assertEqual(self.factura.mensaje_error, "")
        self.assertFalse(self.factura.en_proceso)
        self.assertEqual(self.esperas, [3])
        self.assertEqual(cliente.consultas, [self.factura.clave_acceso])
        self.assertEqual(resultado.data["estado"], Factura.Estado.AUTORIZADO)
        self.assertEqual(
            set(resultado.as_dict()),
            {"success", "message", "data"},
        )

    def test_clave_acceso_registrada_continua_con_autorizacion(self):
        cliente = ClienteSRIFalso(
            [recepcion(DEVUELTA, MensajeSRI("43", "CLAVE ACCESO REGISTRADA"))],
            [autorizacion()],
        )

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertTrue(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.AUTORIZADO)

    # ------------------------------------------------------------------
    # Validación y firma
    # ------------------------------------------------------------------

    def test_validacion_fallida_no_cambia_estado(self):
        factura = crear_factura(self.config, con_detalle=False, secuencial="000000124")
        cliente = ClienteSRIFalso()

        resultado = self._workflow(cliente).procesar(factura.pk)

        self.assertFalse(resultado.success)
        self.assertIn("La factura no tiene líneas de detalle.", resultado.data["errores"])
        factura.refresh_from_db()
        self.assertEqual(factura.estado, Factura.Estado.PENDIENTE)
        self.assertEqual(factura.historial_estados, [])
        self.assertIsNone(factura.clave_acceso)
        self.assertEqual(cliente.enviados, [])

    def test_sin_certificado_queda_en_error(self):
        self.config.certificado_base64 = ""
        self.config.save()
        cliente = ClienteSRIFalso()

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.ERROR)
        self.assertIn("certificado", self.factura.mensaje_error)
        self.assertIsNotNone(self.factura.clave_acceso)
        self.assertEqual(cliente.enviados, [])
        self.assertIsNotNone(resultado.data["xml_sin_firma"])
        self.assertIsNone(resultado.data["xml_firmado"])

    def test_clave_incorrecta_del_certificado(self):
        self.config.clave_certificado = "otra"
        self.config.save()

        resultado = self._workflow(ClienteSRIFalso()).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.ERROR)
        self.assertIn("Error de certificado", self.factura.mensaje_error)

    # ------------------------------------------------------------------
    # Recepción
    # ------------------------------------------------------------------

    def test_recepcion_devuelta_rechaza(self):
        cliente = ClienteSRIFalso(
            [recepcion(DEVUELTA, MensajeSRI("35", "ARCHIVO NO CUMPLE ESTRUCTURA XML"))],
        )

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.RECHAZADO)
        self.assertEqual(self._estados(self.factura), ["FIRMADO", "ENVIADO", "RECHAZADO"])
        self.assertIn("ARCHIVO NO CUMPLE", self.factura.mensaje_error)
        self.assertEqual(cliente.consultas, [])
        self.assertEqual(self.factura.respuesta_sri["recepcion"]["estado"], DEVUELTA)
        self.assertIsNone(self.factura.xml_firmado)
        self.assertIsNone(self.factura.xml_sin_firma)
        self.assertIn("Signature", resultado.data["xml_firmado"])
        self.assertIn(self.factura.clave_acceso, resultado.data["xml_sin_firma"])

    def test_error_de_red_en_recepcion(self):
        cliente = ClienteSRIFalso([recepcion(DESCONOCIDO, error=error_red())])

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.ERROR)
        self.assertIn(TIMEOUT, self.factura.mensaje_error)
        self.assertEqual(cliente.consultas, [])
        self.assertIsNone(self.factura.xml_firmado)

    # ------------------------------------------------------------------
    # Autorización
    # ------------------------------------------------------------------

    def test_no_autorizado(self):
        cliente = ClienteSRIFalso(
            [recepcion()],
            [autorizacion(RECHAZADO, MensajeSRI("39", "FIRMA INVALIDA"))],
        )

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.RECHAZADO)
        self.assertEqual(self.factura.mensaje_error, "39: FIRMA INVALIDA")
        self.assertIsNone(self.factura.numero_autorizacion)
        self.assertIsNone(self.factura.xml_firmado)
        self.assertIsNone(self.factura.xml_sin_firma)
        self.assertIn("Signature", resultado.data["xml_firmado"])
        self.assertIn(self.factura.clave_acceso, resultado.data["xml_sin_firma"])

    def test_sin_respuesta_de_autorizacion_y_consulta_posterior(self):
        cliente = ClienteSRIFalso(
            [recepcion()],
            [autorizacion(DESCONOCIDO), autorizacion(comprobante="<factura>autorizada</factura>")],
        )
        workflow = self._workflow(cliente)

        primero = workflow.procesar(self.factura.pk)
        self.assertFalse(primero.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.ERROR)
        self.assertIn("consulte la autorización", self.factura.mensaje_error)
        clave = self.factura.clave_acceso

        segundo = workflow.consultar_autorizacion(self.factura.pk)

        self.assertTrue(segundo.success, segundo.message)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.AUTORIZADO)
        self.assertEqual(self.factura.clave_acceso, clave)
        self.assertEqual(self.factura.xml_firmado, "<factura>autorizada</factura>")
        self.assertEqual(len(cliente.enviados), 1)
        self.assertEqual(cliente.consultas, [clave, clave])

    def test_error_de_red_en_autorizacion(self):
        cliente = ClienteSRIFalso([recepcion()], [autorizacion(ERROR, error=error_red())])

        self._workflow(cliente).procesar(self.factura.pk)

        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.ERROR)
        self.assertIn("Error de red con autorización", self.factura.mensaje_error)

    def test_consultar_sin_clave(self):
        resultado = self._workflow(ClienteSRIFalso()).consultar_autorizacion(self.factura.pk)
        self.assertFalse(resultado.success)
        self.assertIn("no tiene clave de acceso", resultado.message)

    # ------------------------------------------------------------------
    # Reproceso y bloqueo
    # ------------------------------------------------------------------

    def test_reproceso_conserva_la_clave(self):
        cliente = ClienteSRIFalso(
            [recepcion(DESCONOCIDO, error=error_red()), recepcion()],
            [autorizacion()],
        )
        workflow = self._workflow(cliente)

        workflow.procesar(self.factura.pk)
        self.factura.refresh_from_db()
        clave = self.factura.clave_acceso

        resultado = workflow.procesar(self.factura.pk)

        self.assertTrue(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.clave_acceso, clave)
        self.assertEqual(
            self._estados(self.factura),
            ["FIRMADO", "ERROR", "FIRMADO", "ENVIADO", "AUTORIZADO"],
        )

    def test_factura_autorizada_no_se_reprocesa(self):
        Factura.objects.filter(pk=self.factura.pk).update(estado=Factura.Estado.AUTORIZADO)
        cliente = ClienteSRIFalso()

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.assertIn("ya está autorizada", resultado.message)
        self.assertEqual(cliente.enviados, [])

    def test_reproceso_de_autorizada_conserva_el_xml(self):
        cliente = ClienteSRIFalso([recepcion()], [autorizacion()])
        workflow = self._workflow(cliente)
        workflow.procesar(self.factura.pk)
        self.factura.refresh_from_db()
        xml_firmado = self.factura.xml_firmado
        historial = list(self.factura.historial_estados)

        resultado = workflow.procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.AUTORIZADO)
        self.assertEqual(self.factura.xml_firmado, xml_firmado)
        self.assertEqual(self.factura.historial_estados, historial)
        self.assertEqual(resultado.data["xml_firmado"], xml_firmado)
        self.assertEqual(len(cliente.enviados), 1)

    def test_factura_bloqueada(self):
        Factura.objects.filter(pk=self.factura.pk).update(en_proceso=True, en_proceso_desde=timezone.now())

        resultado = self._workflow(ClienteSRIFalso()).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.assertTrue(resultado.data["en_proceso"])
        self.factura.refresh_from_db()
        self.assertTrue(self.factura.en_proceso)

    def test_bloqueo_vencido_se_recupera(self):
        Factura.objects.filter(pk=self.factura.pk).update(
            en_proceso=True,
            en_proceso_desde=timezone.now() - timedelta(hours=1),
        )
        cliente = ClienteSRIFalso([recepcion()], [autorizacion()])

        resultado = self._workflow(cliente).procesar(self.factura.pk)

        self.assertTrue(resultado.success)
        self.factura.refresh_from_db()
        self.assertFalse(self.factura.en_proceso)

    def test_factura_inexistente(self):
        resultado = self._workflow(ClienteSRIFalso()).procesar(999999)
        self.assertFalse(resultado.success)
        self.assertIn("no encontrada", resultado.message)

    def test_excepcion_inesperada_queda_en_error(self):
        class ClienteRoto(ClienteSRIFalso):
            def enviar_comprobante(self, xml_firmado, clave_acceso=None):
                raise RuntimeError("boom")

        with self.assertLogs("facturacion.sri", level="ERROR"):
            resultado = self._workflow(ClienteRoto()).procesar(self.factura.pk)

        self.assertFalse(resultado.success)
        self.factura.refresh_from_db()
        self.assertEqual(self.factura.estado, Factura.Estado.ERROR)
        self.assertIn("boom", self.factura.mensaje_error)
        self.assertFalse(self.factura.en_proceso)
