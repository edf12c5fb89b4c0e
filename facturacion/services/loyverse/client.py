# facturacion/services/loyverse/client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger("facturacion.loyverse")

LOYVERSE_API_URL = getattr(settings, "LOYVERSE_API_URL", "https://api.loyverse.com/v1.0")
LOYVERSE_TIMEOUT = getattr(settings, "LOYVERSE_TIMEOUT", 30)
LOYVERSE_PAGE_SIZE = getattr(settings, "LOYVERSE_PAGE_SIZE", 250)

# Tope de páginas por consulta, para no quedar en un ciclo si el cursor se repite
MAX_PAGINAS = 200


class LoyverseError(Exception):
    """Errores de comunicación con la API de Loyverse."""


def _iso_utc(fecha: datetime) -> str:
    if fecha.tzinfo is None:
        fecha = fecha.replace(tzinfo=dt_timezone.utc)
    return fecha.astimezone(dt_timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


class LoyverseClient:
    """
    Cliente REST mínimo para Loyverse (recibos y clientes), con token Bearer.
    """

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        if not token:
            raise LoyverseError("No se ha configurado el token de Loyverse.")

        self.base_url = (base_url or LOYVERSE_API_URL).rstrip("/")
        self.timeout = timeout or LOYVERSE_TIMEOUT

        if session is None:
            session = requests.Session()
            retry = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET"],
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
        )
        self.session = session

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            logger.error("Loyverse respondió HTTP %s para %s", status, url)
            raise LoyverseError(f"Loyverse respondió HTTP {status} para {path}") from exc
        except requests.RequestException as exc:
            logger.error("Error de red consultando Loyverse %s: %s", url, exc)
            raise LoyverseError(f"Error de red consultando Loyverse: {exc}") from exc
        except ValueError as exc:
            raise LoyverseError(f"Respuesta de Loyverse no es JSON válido ({path})") from exc

    def listar_recibos(
        self,
        desde: datetime,
        hasta: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Recibos creados desde `desde` (y hasta `hasta`), siguiendo el cursor de paginación.
        """
        params: Dict[str, Any] = {
            "limit": LOYVERSE_PAGE_SIZE,
            "created_at_min": _iso_utc(desde),
        }
        if hasta is not None:
            params["created_at_max"] = _iso_utc(hasta)

        recibos: List[Dict[str, Any]] = []
        for _ in range(MAX_PAGINAS):
            data = self._get("receipts", params=params)
            recibos.extend(data.get("receipts") or [])
            cursor = data.get("cursor")
            if not cursor:
                break
            params = {"limit": LOYVERSE_PAGE_SIZE, "cursor": cursor}
        else:
            logger.warning("Se alcanzó el máximo de %s páginas de recibos en Loyverse.", MAX_PAGINAS)

        logger.info("Loyverse devolvió %s recibos desde %s", len(recibos), _iso_utc(desde))
        return recibos

    def obtener_recibo(self, recibo_id: str) -> Dict[str, Any]:
        return self._get(f"receipts/{recibo_id}")

    def obtener_cliente(self, cliente_id: str) -> Dict[str, Any]:
        return self._get(f"customers/{cliente_id}")
