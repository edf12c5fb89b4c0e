# facturacion/tasks.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict

from celery import shared_task
from django.utils import timezone

from facturacion.models import ConfiguracionEmisor, EstadoSincronizacion, Factura
from facturacion.services.loyverse.client import LoyverseError
from facturacion.services.sincronizacion import SincronizacionEnCurso, SincronizadorLoyverse
from facturacion.services.sri.workflow import FacturaWorkflow

logger = logging.getLogger(__name__)


# =====================================================
# Tarea periódica: sincronización Loyverse → SRI
# =====================================================


def _toca_sincronizar(config: ConfiguracionEmisor, ahora) -> bool:
    """
    Respeta el intervalo propio de cada configuración (15/30/60 min); el beat
    se dispara con el intervalo más corto.
    """
    estado = EstadoSincronizacion.objects.filter(configuracion=config).first()
    if estado is None or estado.ultima_sincronizacion is None:
        return True
    # margen de 1 minuto para no perder un ciclo por desfase del beat
    siguiente = estado.ultima_sincronizacion + timedelta(minutes=max(config.intervalo_minutos - 1, 0))
    return ahora >= siguiente


@shared_task
def sincronizar_loyverse_task(forzar: bool = False) -> Dict[str, Any]:
    """
    Recorre las configuraciones activas con automatización habilitada y
    ejecuta una sincronización por cada una, de forma secuencial.
    """
    ahora = timezone.now()
    resultados: Dict[str, Any] = {}

    configs = ConfiguracionEmisor.objects.filter(is_active=True, automatizacion=True).order_by("pk")
    for config in configs:
        if not forzar and not _toca_sincronizar(config, ahora):
            logger.debug("Configuración %s: aún no toca sincronizar.", config.pk)
            continue
        try:
            resultados[str(config.pk)] = SincronizadorLoyverse(config).ejecutar()
        except SincronizacionEnCurso as exc:
            logger.info("%s", exc)
            resultados[str(config.pk)] = {"omitida": True, "motivo": str(exc)}
        except LoyverseError as exc:
            logger.error("Configuración %s: %s", config.pk, exc)
            resultados[str(config.pk)] = {"error": str(exc)}
        except Exception as exc:  # noqa: BLE001
            logger.exception("Error inesperado sincronizando la configuración %s", config.pk)
            resultados[str(config.pk)] = {"error": f"Error inesperado: {exc}"}

    return resultados


# =====================================================
# Tarea: proceso completo de una factura
# =====================================================


@shared_task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def procesar_factura_task(self, factura_id: int) -> Dict[str, Any]:
    """
    Firma, envía y consulta la autorización de una factura.

    El workflow no lanza excepciones por errores de negocio ni de red; solo
    se reintenta ante fallos realmente inesperados.
    """
    logger.info("procesar_factura_task iniciado para factura_id=%s", factura_id)

    try:
        resultado = FacturaWorkflow().procesar(factura_id)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error inesperado en procesar_factura_task para factura %s", factura_id)
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            raise self.retry(exc=exc, countdown=countdown)
        return {"success": False, "message": str(exc), "data": {"factura_id": factura_id}}

    logger.info(
        "procesar_factura_task finalizado para factura_id=%s, estado=%s",
        factura_id,
        resultado.data.get("estado"),
    )
    return resultado.as_dict()


# =====================================================
# Tarea: solo autorización (con backoff)
# =====================================================


@shared_task(
    bind=True,
    max_retries=6,
    default_retry_delay=60,  # el backoff se calcula en cada reintento
)
def consultar_autorizacion_task(self, factura_id: int) -> Dict[str, Any]:
    """
    Consulta la autorización de una factura ya enviada.

    Si el SRI todavía no la autoriza (queda en ERROR sin rechazo), se
    reprograma con backoff exponencial: 1, 2, 4, 8, 16, 32 minutos.
    """
    logger.info("consultar_autorizacion_task iniciado para factura_id=%s", factura_id)

    try:
        resultado = FacturaWorkflow().consultar_autorizacion(factura_id)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error inesperado en consultar_autorizacion_task para factura %s", factura_id)
        if self.request.retries < self.max_retries:
            countdown = 60 * (2**self.request.retries)
            raise self.retry(exc=exc, countdown=countdown)
        return {"success": False, "message": str(exc), "data": {"factura_id": factura_id}}

    estado = resultado.data.get("estado")
    if estado in (Factura.Estado.ERROR, Factura.Estado.ENVIADO) and self.request.retries < self.max_retries:
        countdown = 60 * (2**self.request.retries)
        logger.info(
            "Factura %s sin autorización todavía (%s); reintento en %s segundos.",
            factura_id,
            resultado.message,
            countdown,
        )
        raise self.retry(countdown=countdown)

    logger.info(
        "consultar_autorizacion_task finalizado para factura_id=%s, estado=%s",
        factura_id,
        estado,
    )
    return resultado.as_dict()
