# facturacion/services/sincronizacion.py
# -*- coding: utf-8 -*-
"""
Sincronización periódica Loyverse → SRI.

Una corrida por configuración a la vez (bandera en EstadoSincronizacion,
tomada con un UPDATE condicional). Las facturas nuevas se procesan de una
en una, nunca en paralelo.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, List, Optional

from django.conf import settings
from django.db.models import Q
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from facturacion.models import ConfiguracionEmisor, EstadoSincronizacion, Factura
from facturacion.services.loyverse.client import LoyverseClient, LoyverseError
from facturacion.services.loyverse.mapper import MapeoError, crear_factura_desde_recibo
from facturacion.services.sri.workflow import FacturaWorkflow

logger = logging.getLogger("facturacion.sincronizacion")

# Ventana inicial cuando nunca se ha sincronizado
VENTANA_INICIAL = timedelta(hours=24)


def _lock_ttl() -> timedelta:
    return timedelta(minutes=getattr(settings, "SINCRONIZACION_LOCK_TTL", 120))


def _fecha_recibo(recibo: Dict[str, Any]) -> Optional[datetime]:
    try:
        fecha = parse_datetime(recibo.get("created_at") or "")
    except ValueError:
        return None
    if fecha is not None and timezone.is_naive(fecha):
        fecha = timezone.make_aware(fecha, dt_timezone.utc)
    return fecha


class SincronizacionEnCurso(Exception):
    """Ya hay una sincronización corriendo para la configuración."""


class SincronizadorLoyverse:
    def __init__(
        self,
        configuracion: ConfiguracionEmisor,
        workflow: Optional[FacturaWorkflow] = None,
        cliente_loyverse: Optional[LoyverseClient] = None,
    ):
        self.configuracion = configuracion
        self.workflow = workflow or FacturaWorkflow()
        self._cliente = cliente_loyverse
        self._no_importados: List[Dict[str, Any]] = []

    @property
    def cliente(self) -> LoyverseClient:
        if self._cliente is None:
            self._cliente = LoyverseClient(self.configuracion.loyverse_token)
        return self._cliente

    # ------------------------------------------------------------------
    # Bandera de ejecución
    # ------------------------------------------------------------------

    def _estado(self) -> EstadoSincronizacion:
        estado, _ = EstadoSincronizacion.objects.get_or_create(configuracion=self.configuracion)
        return estado

    def _reclamar(self, estado: EstadoSincronizacion) -> bool:
        ahora = timezone.now()
        vencido = ahora - _lock_ttl()
        actualizadas = (
            EstadoSincronizacion.objects.filter(pk=estado.pk)
            .filter(Q(en_ejecucion=False) | Q(en_ejecucion_desde__lt=vencido) | Q(en_ejecucion_desde__isnull=True))
            .update(en_ejecucion=True, en_ejecucion_desde=ahora)
        )
        return actualizadas == 1

    @staticmethod
    def _liberar(estado: EstadoSincronizacion, **campos: Any) -> None:
        EstadoSincronizacion.objects.filter(pk=estado.pk).update(
            en_ejecucion=False,
            en_ejecucion_desde=None,
            **campos,
        )

    # ------------------------------------------------------------------
    # Corrida
    # ------------------------------------------------------------------

    def ejecutar(self) -> Dict[str, Any]:
        """
        Importa los recibos nuevos desde la última sincronización y procesa
        cada factura creada. Retorna un resumen de la corrida.

        Lanza SincronizacionEnCurso si otra corrida tiene la bandera.
        """
        estado = self._estado()
        if not self._reclamar(estado):
            logger.warning(
                "Sincronización de la configuración %s ya en ejecución desde %s; se omite.",
                self.configuracion.pk,
                estado.en_ejecucion_desde,
            )
            raise SincronizacionEnCurso(
                f"Ya hay una sincronización en curso para la configuración {self.configuracion.pk}"
            )

        inicio = timezone.now()
        desde = estado.ultima_sincronizacion or (inicio - VENTANA_INICIAL)
        resumen: Dict[str, Any] = {
            "configuracion_id": self.configuracion.pk,
            "desde": desde.isoformat(),
            "hasta": inicio.isoformat(),
            "recibos": 0,
            "creadas": 0,
            "existentes": 0,
            "omitidas": 0,
            "autorizadas": 0,
            "fallidas": 0,
            "errores": [],
        }
        ultima_sincronizacion = estado.ultima_sincronizacion

        try:
            logger.info(
                "Sincronización Loyverse configuración=%s desde %s",
                self.configuracion.pk,
                desde.isoformat(),
            )
            try:
                recibos = self.cliente.listar_recibos(desde, inicio)
            except LoyverseError as exc:
                logger.error("No se pudo consultar recibos de Loyverse: %s", exc)
                resumen["errores"].append(str(exc))
                return resumen

            resumen["recibos"] = len(recibos)
            self._no_importados = []

            for recibo in recibos:
                self._procesar_recibo(recibo, resumen)

            # La marca solo avanza cuando la corrida termina
            ultima_sincronizacion = self._marca_tras_corrida(desde, inicio)

            logger.info(
                "Sincronización configuración=%s terminada: %s recibos, %s nuevas, %s autorizadas, %s fallidas",
                self.configuracion.pk,
                resumen["recibos"],
                resumen["creadas"],
                resumen["autorizadas"],
                resumen["fallidas"],
            )
            return resumen
        finally:
            self._liberar(
                estado,
                ultima_sincronizacion=ultima_sincronizacion,
                ultimo_resumen=resumen,
            )

    def _marca_tras_corrida(self, desde: datetime, inicio: datetime) -> datetime:
        """
        Nueva marca de agua. No pasa de los recibos que no se pudieron importar,
        para que la próxima corrida los vuelva a pedir (la importación es
        idempotente por loyverse_id).
        """
        if not self._no_importados:
            return inicio

        fechas = [_fecha_recibo(r) for r in self._no_importados]
        marca = desde if None in fechas else max(desde, min(fechas))
        logger.warning(
            "Configuración %s: %s recibos sin importar; la marca queda en %s.",
            self.configuracion.pk,
            len(self._no_importados),
            marca.isoformat(),
        )
        return marca

    def _procesar_recibo(self, recibo: Dict[str, Any], resumen: Dict[str, Any]) -> None:
        numero = recibo.get("receipt_number") or recibo.get("id")
        try:
            cliente = None
            if recibo.get("customer_id"):
                cliente = self.cliente.obtener_cliente(recibo["customer_id"])
            factura, creada = crear_factura_desde_recibo(recibo, cliente, self.configuracion)
        except MapeoError as exc:
            logger.info("Recibo %s omitido: %s", numero, exc)
            resumen["omitidas"] += 1
            return
        except LoyverseError as exc:
            logger.error("Recibo %s: error consultando el cliente en Loyverse: %s", numero, exc)
            resumen["fallidas"] += 1
            resumen["errores"].append(f"Recibo {numero}: {exc}")
            self._no_importados.append(recibo)
            return
        except Exception as exc:  # noqa: BLE001
            # Un recibo con datos corruptos no debe cortar la corrida
            logger.exception("Recibo %s: error inesperado al importarlo", numero)
            resumen["fallidas"] += 1
            resumen["errores"].append(f"Recibo {numero}: error inesperado: {exc}")
            self._no_importados.append(recibo)
            return

        if not creada:
            resumen["existentes"] += 1
            return
        resumen["creadas"] += 1

        resultado = self.workflow.procesar(factura.pk, configuracion=self.configuracion)
        estado = resultado.data.get("estado")
        if resultado.success and estado == Factura.Estado.AUTORIZADO:
            resumen["autorizadas"] += 1
        else:
            resumen["fallidas"] += 1
            resumen["errores"].append(f"Recibo {numero}: {resultado.message}")
