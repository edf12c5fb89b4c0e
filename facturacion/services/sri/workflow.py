# facturacion/services/sri/workflow.py
# -*- coding: utf-8 -*-
"""
Orquestación del ciclo de vida SRI de una factura:

    PENDIENTE → FIRMADO → ENVIADO → {AUTORIZADO | RECHAZADO}
    (cualquier paso) → ERROR

Cada paso retorna un PasoResultado; el workflow traduce los fallos a
transiciones de estado + historial. Ninguna excepción sale de `procesar`
ni de `consultar_autorizacion`: el resultado siempre es un ResultadoProceso.

Política de clave de acceso: se genera una sola vez, se guarda y no se
regenera en reprocesos. El XML, en cambio, se regenera siempre desde los
datos actuales. Los XML solo se guardan cuando la factura queda AUTORIZADA.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from django.conf import settings
from django.db import DatabaseError
from django.db.models import Q
from django.utils import timezone

from facturacion.models import AMBIENTE_PRODUCCION, ConfiguracionEmisor, Factura
from facturacion.services.sri.clave_acceso import generar_clave_acceso
from facturacion.services.sri.client import (
    AUTORIZADO,
    DEVUELTA,
    ERROR,
    RECHAZADO,
    RECIBIDA,
    RespuestaAutorizacion,
    RespuestaRecepcion,
    SRIClient,
)
from facturacion.services.sri.signer import CertificateError, SigningError, firmar_xml
from facturacion.services.sri.xml_factura_builder import build_factura_xml
from facturacion.services.validacion import validar_configuracion, validar_factura

logger = logging.getLogger("facturacion.sri")

# Recepción DEVUELTA con este identificador: el comprobante ya fue recibido antes
CLAVE_ACCESO_REGISTRADA = "43"


class WorkflowError(Exception):
    """Errores de orquestación SRI (configuración, bloqueo, datos faltantes)."""


class Fallo:
    VALIDACION = "VALIDACION"
    CERTIFICADO = "CERTIFICADO"
    FIRMA = "FIRMA"
    TRANSPORTE = "TRANSPORTE"
    PROTOCOLO = "PROTOCOLO"
    RECHAZO = "RECHAZO"
    SIN_RESPUESTA = "SIN_RESPUESTA"
    INESPERADO = "INESPERADO"


@dataclass
class PasoResultado:
    ok: bool
    fallo: Optional[str] = None
    mensaje: str = ""
    valor: Any = None
    errores: List[str] = field(default_factory=list)

    @classmethod
    def exito(cls, valor: Any = None, mensaje: str = "") -> "PasoResultado":
        return cls(ok=True, valor=valor, mensaje=mensaje)

    @classmethod
    def fallido(cls, fallo: str, mensaje: str, valor: Any = None, errores: Optional[List[str]] = None) -> "PasoResultado":
        return cls(ok=False, fallo=fallo, mensaje=mensaje, valor=valor, errores=errores or [])


@dataclass
class ResultadoProceso:
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}


def _lock_ttl() -> timedelta:
    return timedelta(minutes=getattr(settings, "FACTURA_LOCK_TTL", 10))


class FacturaWorkflow:
    """
    Ejecuta firma → envío → autorización para una factura.

    `cliente_factory(ambiente)` crea el cliente SRI y `esperar(segundos)` es la
    pausa previa a consultar la autorización; ambos se inyectan en pruebas.
    """

    def __init__(
        self,
        cliente_factory: Callable[[str], SRIClient] = SRIClient,
        esperar: Callable[[float], None] = time.sleep,
        espera_autorizacion: Optional[float] = None,
    ):
        self.cliente_factory = cliente_factory
        self.esperar = esperar
        if espera_autorizacion is None:
            espera_autorizacion = getattr(settings, "SRI_ESPERA_AUTORIZACION", 3)
        self.espera_autorizacion = espera_autorizacion

    # ------------------------------------------------------------------
    # Bloqueo por factura
    # ------------------------------------------------------------------

    @staticmethod
    def _reclamar(factura_id: int) -> bool:
        ahora = timezone.now()
        vencido = ahora - _lock_ttl()
        actualizadas = (
            Factura.objects.filter(pk=factura_id)
            .filter(Q(en_proceso=False) | Q(en_proceso_desde__lt=vencido))
            .update(en_proceso=True, en_proceso_desde=ahora)
        )
        return actualizadas == 1

    @staticmethod
    def _liberar(factura_id: int) -> None:
        try:
            Factura.objects.filter(pk=factura_id).update(en_proceso=False, en_proceso_desde=None)
        except DatabaseError:
            logger.exception("No se pudo liberar el bloqueo de la factura id=%s", factura_id)

    # ------------------------------------------------------------------
    # Persistencia de estado
    # ------------------------------------------------------------------

    @staticmethod
    def _transicion(
        factura: Factura,
        estado: str,
        mensaje: str = "",
        campos: Iterable[str] = (),
    ) -> None:
        factura.estado = estado
        factura.agregar_historial(estado, mensaje)
        update_fields = {"estado", "historial_estados", "updated_at", *campos}
        factura.save(update_fields=sorted(update_fields))
        logger.info("Factura %s → %s %s", factura.pk, estado, f"({mensaje})" if mensaje else "")

    def _marcar_error(self, factura: Factura, mensaje: str, campos: Iterable[str] = ()) -> None:
        """ERROR con persistencia best-effort: un fallo de BD no oculta el error original."""
        factura.mensaje_error = mensaje
        try:
            self._transicion(factura, Factura.Estado.ERROR, mensaje, ["mensaje_error", *campos])
        except DatabaseError:
            logger.exception("No se pudo registrar el estado ERROR de la factura id=%s", factura.pk)

    # ------------------------------------------------------------------
    # Configuración
    # ------------------------------------------------------------------

    @staticmethod
    def _resolver_configuracion(
        factura: Factura,
        configuracion: Optional[ConfiguracionEmisor],
    ) -> ConfiguracionEmisor:
        config = configuracion or factura.configuracion
        if config is None:
            ambiente = (
                ConfiguracionEmisor.PRODUCCION
                if factura.ambiente == AMBIENTE_PRODUCCION
                else ConfiguracionEmisor.PRUEBAS
            )
            config = ConfiguracionEmisor.get_activa(ambiente)
        if config is None:
            raise WorkflowError("No hay una configuración de emisor activa para el ambiente de la factura.")
        return config

    # ------------------------------------------------------------------
    # Pasos
    # ------------------------------------------------------------------

    @staticmethod
    def _paso_validar(factura: Factura, config: ConfiguracionEmisor) -> PasoResultado:
        errores = validar_configuracion(config, requiere_certificado=False) + validar_factura(factura)
        if errores:
            return PasoResultado.fallido(Fallo.VALIDACION, "; ".join(errores), errores=errores)
        return PasoResultado.exito()

    @staticmethod
    def _asegurar_clave(factura: Factura) -> PasoResultado:
        if factura.clave_acceso:
            return PasoResultado.exito(factura.clave_acceso)
        try:
            factura.clave_acceso = generar_clave_acceso(factura)
            factura.save(update_fields=["clave_acceso", "updated_at"])
        except DatabaseError as exc:
            factura.clave_acceso = None
            logger.exception("No se pudo guardar la clave de acceso de la factura id=%s", factura.pk)
            return PasoResultado.fallido(Fallo.INESPERADO, f"No se pudo guardar la clave de acceso: {exc}")
        logger.info("Clave de acceso asignada a factura id=%s: %s", factura.pk, factura.clave_acceso)
        return PasoResultado.exito(factura.clave_acceso)

    @staticmethod
    def _paso_firmar(factura: Factura, config: ConfiguracionEmisor) -> PasoResultado:
        """
        Regenera el XML desde los datos actuales y lo firma.
        valor = {"xml_sin_firma": ..., "xml_firmado": ...}
        """
        try:
            xml_sin_firma = build_factura_xml(factura)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error construyendo XML de factura id=%s", factura.pk)
            return PasoResultado.fallido(Fallo.INESPERADO, f"Error al generar el XML: {exc}")

        valor = {"xml_sin_firma": xml_sin_firma, "xml_firmado": None}

        p12 = config.certificado_bytes()
        if not p12 or not config.clave_certificado:
            return PasoResultado.fallido(
                Fallo.CERTIFICADO,
                "No se ha configurado el certificado digital",
                valor=valor,
            )

        try:
            valor["xml_firmado"] = firmar_xml(xml_sin_firma, p12, config.clave_certificado)
        except CertificateError as exc:
            return PasoResultado.fallido(Fallo.CERTIFICADO, f"Error de certificado: {exc}", valor=valor)
        except SigningError as exc:
            return PasoResultado.fallido(Fallo.FIRMA, f"Error de firma: {exc}", valor=valor)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error inesperado firmando factura id=%s", factura.pk)
            return PasoResultado.fallido(Fallo.FIRMA, f"Error de firma: {exc}", valor=valor)
        finally:
            del p12

        return PasoResultado.exito(valor)

    @staticmethod
    def _paso_enviar(cliente: SRIClient, xml_firmado: str, clave_acceso: str) -> PasoResultado:
        try:
            respuesta: RespuestaRecepcion = cliente.enviar_comprobante(xml_firmado, clave_acceso=clave_acceso)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error inesperado en recepción SRI (clave=%s)", clave_acceso)
            return PasoResultado.fallido(Fallo.INESPERADO, f"Error inesperado en recepción: {exc}")

        texto = respuesta.mensaje_texto()
        if respuesta.estado == RECIBIDA:
            return PasoResultado.exito(respuesta, texto)

        if respuesta.estado == DEVUELTA:
            if any(m.identificador == CLAVE_ACCESO_REGISTRADA for m in respuesta.mensajes):
                logger.info("Clave %s ya registrada en SRI; se consulta la autorización.", clave_acceso)
                return PasoResultado.exito(respuesta, texto)
            return PasoResultado.fallido(Fallo.RECHAZO, texto or "Comprobante devuelto por el SRI", valor=respuesta)

        if respuesta.error is not None:
            return PasoResultado.fallido(
                Fallo.TRANSPORTE,
                f"Error de red con recepción SRI ({respuesta.error.tipo}): {respuesta.error.detalle}",
                valor=respuesta,
            )
        return PasoResultado.fallido(
            Fallo.PROTOCOLO,
            texto or "Respuesta de recepción SRI sin estado reconocible",
            valor=respuesta,
        )

    @staticmethod
    def _paso_autorizar(cliente: SRIClient, clave_acceso: str) -> PasoResultado:
        try:
            respuesta: RespuestaAutorizacion = cliente.consultar_autorizacion(clave_acceso)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error inesperado en autorización SRI (clave=%s)", clave_acceso)
            return PasoResultado.fallido(Fallo.INESPERADO, f"Error inesperado en autorización: {exc}")

        texto = respuesta.mensaje_texto()
        if respuesta.estado == AUTORIZADO:
            return PasoResultado.exito(respuesta, texto)
        if respuesta.estado == RECHAZADO:
            return PasoResultado.fallido(Fallo.RECHAZO, texto or "Comprobante no autorizado por el SRI", valor=respuesta)
        if respuesta.estado == ERROR and respuesta.error is not None:
            return PasoResultado.fallido(
                Fallo.TRANSPORTE,
                f"Error de red con autorización SRI ({respuesta.error.tipo}): {respuesta.error.detalle}",
                valor=respuesta,
            )
        # DESCONOCIDO: en proceso, sin autorizaciones o respuesta inválida
        detalle = texto or respuesta.estado_sri or "sin autorizaciones"
        return PasoResultado.fallido(
            Fallo.SIN_RESPUESTA,
            f"El SRI aún no autoriza el comprobante ({detalle}); consulte la autorización más tarde",
            valor=respuesta,
        )

    # ------------------------------------------------------------------
    # Resultado
    # ------------------------------------------------------------------

    @staticmethod
    def _resultado(
        factura: Factura,
        success: bool,
        message: str,
        xml_sin_firma: Optional[str] = None,
        xml_firmado: Optional[str] = None,
        errores: Optional[List[str]] = None,
    ) -> ResultadoProceso:
        data = {
            "factura_id": factura.pk,
            "estado": factura.estado,
            "clave_acceso": factura.clave_acceso,
            "mensaje_error": factura.mensaje_error,
            "numero_autorizacion": factura.numero_autorizacion,
            "fecha_autorizacion": (
                factura.fecha_autorizacion.isoformat() if factura.fecha_autorizacion else None
            ),
            "historial_estados": factura.historial_estados,
            "respuesta_sri": factura.respuesta_sri,
            "xml_sin_firma": xml_sin_firma if xml_sin_firma is not None else factura.xml_sin_firma,
            "xml_firmado": xml_firmado if xml_firmado is not None else factura.xml_firmado,
        }
        if errores:
            data["errores"] = errores
        return ResultadoProceso(success=success, message=message, data=data)

    def _registrar_autorizacion(
        self,
        factura: Factura,
        respuesta: RespuestaAutorizacion,
        xml_sin_firma: Optional[str],
        xml_firmado: Optional[str],
    ) -> None:
        factura.mensaje_error = ""
        factura.numero_autorizacion = respuesta.numero_autorizacion or factura.clave_acceso
        factura.fecha_autorizacion = respuesta.fecha_autorizacion or timezone.now()
        factura.xml_sin_firma = xml_sin_firma
        factura.xml_firmado = xml_firmado
        self._transicion(
            factura,
            Factura.Estado.AUTORIZADO,
            f"Autorización N° {factura.numero_autorizacion}",
            [
                "mensaje_error",
                "numero_autorizacion",
                "fecha_autorizacion",
                "xml_sin_firma",
                "xml_firmado",
                "respuesta_sri",
            ],
        )

    # ------------------------------------------------------------------
    # Entradas públicas
    # ------------------------------------------------------------------

    def procesar(
        self,
        factura_id: int,
        configuracion: Optional[ConfiguracionEmisor] = None,
    ) -> ResultadoProceso:
        """
        Proceso completo: validar → firmar → enviar → autorizar.
        """
        if not Factura.objects.filter(pk=factura_id).exists():
            return ResultadoProceso(False, f"Factura {factura_id} no encontrada", {"factura_id": factura_id})

        if not self._reclamar(factura_id):
            logger.warning("Factura id=%s ya se está procesando; se omite.", factura_id)
            return ResultadoProceso(
                False,
                "La factura ya se está procesando",
                {"factura_id": factura_id, "en_proceso": True},
            )

        factura: Optional[Factura] = None
        xml_sin_firma: Optional[str] = None
        xml_firmado: Optional[str] = None
        try:
            factura = Factura.objects.select_related("configuracion").get(pk=factura_id)

            if factura.estado == Factura.Estado.AUTORIZADO:
                return self._resultado(factura, False, "La factura ya está autorizada; no se reprocesa")

            try:
                config = self._resolver_configuracion(factura, configuracion)
            except WorkflowError as exc:
                return self._resultado(factura, False, str(exc), errores=[str(exc)])

            validacion = self._paso_validar(factura, config)
            if not validacion.ok:
                logger.warning("Factura id=%s no pasa validación: %s", factura.pk, validacion.mensaje)
                return self._resultado(
                    factura,
                    False,
                    f"Validación fallida: {validacion.mensaje}",
                    errores=validacion.errores,
                )

            clave = self._asegurar_clave(factura)
            if not clave.ok:
                self._marcar_error(factura, clave.mensaje)
                return self._resultado(factura, False, clave.mensaje)

            # 1. PENDIENTE → FIRMADO
            firma = self._paso_firmar(factura, config)
            if firma.valor:
                xml_sin_firma = firma.valor["xml_sin_firma"]
                xml_firmado = firma.valor["xml_firmado"]
            if not firma.ok:
                self._marcar_error(factura, firma.mensaje)
                return self._resultado(factura, False, firma.mensaje, xml_sin_firma, xml_firmado)
            self._transicion(factura, Factura.Estado.FIRMADO, "XML generado y firmado")

            # 2. FIRMADO → ENVIADO
            cliente = self.cliente_factory(factura.ambiente)
            envio = self._paso_enviar(cliente, xml_firmado, factura.clave_acceso)
            if isinstance(envio.valor, RespuestaRecepcion):
                factura.respuesta_sri = {"recepcion": envio.valor.as_dict()}

            if not envio.ok and envio.fallo != Fallo.RECHAZO:
                self._marcar_error(factura, envio.mensaje, ["respuesta_sri"])
                return self._resultado(factura, False, envio.mensaje, xml_sin_firma, xml_firmado)

            factura.mensaje_error = envio.mensaje
            self._transicion(
                factura,
                Factura.Estado.ENVIADO,
                envio.mensaje or "Comprobante recibido por el SRI",
                ["mensaje_error", "respuesta_sri"],
            )

            if not envio.ok:
                self._transicion(factura, Factura.Estado.RECHAZADO, envio.mensaje)
                return self._resultado(
                    factura, False, f"Comprobante devuelto por el SRI: {envio.mensaje}", xml_sin_firma, xml_firmado
                )

            # 3. ENVIADO → AUTORIZADO | RECHAZADO
            self.esperar(self.espera_autorizacion)
            autorizacion = self._paso_autorizar(cliente, factura.clave_acceso)
            if isinstance(autorizacion.valor, RespuestaAutorizacion):
                factura.respuesta_sri = {
                    **(factura.respuesta_sri or {}),
                    "autorizacion": autorizacion.valor.as_dict(),
                }

            if autorizacion.ok:
                self._registrar_autorizacion(factura, autorizacion.valor, xml_sin_firma, xml_firmado)
                return self._resultado(
                    factura, True, "Factura autorizada por el SRI", xml_sin_firma, xml_firmado
                )

            if autorizacion.fallo == Fallo.RECHAZO:
                factura.mensaje_error = autorizacion.mensaje
                self._transicion(
                    factura,
                    Factura.Estado.RECHAZADO,
                    autorizacion.mensaje,
                    ["mensaje_error", "respuesta_sri"],
                )
                return self._resultado(
                    factura,
                    False,
                    f"Factura no autorizada: {autorizacion.mensaje}",
                    xml_sin_firma,
                    xml_firmado,
                )

            self._marcar_error(factura, autorizacion.mensaje, ["respuesta_sri"])
            return self._resultado(factura, False, autorizacion.mensaje, xml_sin_firma, xml_firmado)

        except Exception as exc:  # noqa: BLE001
            logger.exception("Error inesperado procesando factura id=%s", factura_id)
            mensaje = f"Error inesperado: {exc}"
            if factura is None:
                return ResultadoProceso(False, mensaje, {"factura_id": factura_id})
            self._marcar_error(factura, mensaje)
            return self._resultado(factura, False, mensaje, xml_sin_firma, xml_firmado)
        finally:
            self._liberar(factura_id)

    def consultar_autorizacion(
        self,
        factura_id: int,
        configuracion: Optional[ConfiguracionEmisor] = None,
    ) -> ResultadoProceso:
        """
        Solo consulta la autorización (facturas que quedaron ENVIADO/ERROR tras un
        fallo de red). No reenvía ni vuelve a firmar.
        """
        if not Factura.objects.filter(pk=factura_id).exists():
            return ResultadoProceso(False, f"Factura {factura_id} no encontrada", {"factura_id": factura_id})

        if not self._reclamar(factura_id):
            return ResultadoProceso(
                False,
                "La factura ya se está procesando",
                {"factura_id": factura_id, "en_proceso": True},
            )

        factura: Optional[Factura] = None
        try:
            factura = Factura.objects.select_related("configuracion").get(pk=factura_id)

            if factura.estado == Factura.Estado.AUTORIZADO:
                return self._resultado(factura, True, "La factura ya está autorizada")
            if not factura.clave_acceso:
                return self._resultado(factura, False, "La factura no tiene clave de acceso; procésela primero")

            cliente = self.cliente_factory(factura.ambiente)
            autorizacion = self._paso_autorizar(cliente, factura.clave_acceso)
            if isinstance(autorizacion.valor, RespuestaAutorizacion):
                factura.respuesta_sri = {
                    **(factura.respuesta_sri or {}),
                    "autorizacion": autorizacion.valor.as_dict(),
                }

            if autorizacion.ok:
                respuesta: RespuestaAutorizacion = autorizacion.valor
                xml_sin_firma = build_factura_xml(factura)
                xml_firmado = respuesta.comprobante or self._refirmar(factura, xml_sin_firma, configuracion)
                self._registrar_autorizacion(factura, respuesta, xml_sin_firma, xml_firmado)
                return self._resultado(factura, True, "Factura autorizada por el SRI")

            if autorizacion.fallo == Fallo.RECHAZO:
                factura.mensaje_error = autorizacion.mensaje
                self._transicion(
                    factura,
                    Factura.Estado.RECHAZADO,
                    autorizacion.mensaje,
                    ["mensaje_error", "respuesta_sri"],
                )
                return self._resultado(factura, False, f"Factura no autorizada: {autorizacion.mensaje}")

            self._marcar_error(factura, autorizacion.mensaje, ["respuesta_sri"])
            return self._resultado(factura, False, autorizacion.mensaje)

        except Exception as exc:  # noqa: BLE001
            logger.exception("Error inesperado consultando autorización de factura id=%s", factura_id)
            mensaje = f"Error inesperado: {exc}"
            if factura is None:
                return ResultadoProceso(False, mensaje, {"factura_id": factura_id})
            self._marcar_error(factura, mensaje)
            return self._resultado(factura, False, mensaje)
        finally:
            self._liberar(factura_id)

    def _refirmar(
        self,
        factura: Factura,
        xml_sin_firma: str,
        configuracion: Optional[ConfiguracionEmisor],
    ) -> Optional[str]:
        """
        El SRI no devolvió el comprobante autorizado: se firma de nuevo el XML
        regenerado para conservar una copia firmada.
        """
        try:
            config = self._resolver_configuracion(factura, configuracion)
            return firmar_xml(xml_sin_firma, config.certificado_bytes(), config.clave_certificado)
        except (WorkflowError, CertificateError, SigningError) as exc:
            logger.warning(
                "Factura id=%s autorizada sin copia firmada disponible: %s",
                factura.pk,
                exc,
            )
            return None
