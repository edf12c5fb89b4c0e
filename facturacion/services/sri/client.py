# facturacion/services/sri/client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import logging
import socket
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import requests
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from lxml import etree
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger("facturacion.sri")


# =========================
# Configuración de endpoints SRI (tomados desde settings)
# =========================

SRI_TEST_RECEPCION_URL = getattr(
    settings,
    "SRI_TEST_RECEPCION_URL",
    "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline",
)
SRI_TEST_AUTORIZACION_URL = getattr(
    settings,
    "SRI_TEST_AUTORIZACION_URL",
    "https://celcer.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline",
)
SRI_PROD_RECEPCION_URL = getattr(
    settings,
    "SRI_PROD_RECEPCION_URL",
    "https://cel.sri.gob.ec/comprobantes-electronicos-ws/RecepcionComprobantesOffline",
)
SRI_PROD_AUTORIZACION_URL = getattr(
    settings,
    "SRI_PROD_AUTORIZACION_URL",
    "https://cel.sri.gob.ec/comprobantes-electronicos-ws/AutorizacionComprobantesOffline",
)

# Parámetros de red / resiliencia
SRI_SSL_VERIFY = getattr(settings, "SRI_SSL_VERIFY", True)
SRI_REQUEST_TIMEOUT = getattr(settings, "SRI_REQUEST_TIMEOUT", 60)  # segundos
SRI_RETRY_MAX = getattr(settings, "SRI_RETRY_MAX", 2)
SRI_RETRY_BACKOFF = getattr(settings, "SRI_RETRY_BACKOFF", 2)

SOAP_HEADERS = {
    "Content-Type": "text/xml;charset=UTF-8",
    "SOAPAction": "",
}

ENVELOPE_RECEPCION = (
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
    'xmlns:ec="http://ec.gob.sri.ws.recepcion">'
    "<soapenv:Header/>"
    "<soapenv:Body>"
    "<ec:validarComprobante><xml>{xml}</xml></ec:validarComprobante>"
    "</soapenv:Body>"
    "</soapenv:Envelope>"
)

ENVELOPE_AUTORIZACION = (
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
    'xmlns:ec="http://ec.gob.sri.ws.autorizacion">'
    "<soapenv:Header/>"
    "<soapenv:Body>"
    "<ec:autorizacionComprobante>"
    "<claveAccesoComprobante>{clave}</claveAccesoComprobante>"
    "</ec:autorizacionComprobante>"
    "</soapenv:Body>"
    "</soapenv:Envelope>"
)

# Estados de recepción
RECIBIDA = "RECIBIDA"
DEVUELTA = "DEVUELTA"
DESCONOCIDO = "DESCONOCIDO"

# Estados de autorización
AUTORIZADO = "AUTORIZADO"
RECHAZADO = "RECHAZADO"
ERROR = "ERROR"

# Tipos de fallo de transporte
TIMEOUT = "TIMEOUT"
CONEXION_REINICIADA = "CONEXION_REINICIADA"
DNS = "DNS"
RED = "RED"
HTTP = "HTTP"


@dataclass
class MensajeSRI:
    identificador: str = ""
    mensaje: str = ""
    informacion_adicional: str = ""
    tipo: str = ""

    def texto(self) -> str:
        """'identificador: mensaje (informacion adicional)'."""
        partes = ": ".join(p for p in (self.identificador, self.mensaje) if p)
        if self.informacion_adicional:
            partes = f"{partes} ({self.informacion_adicional})" if partes else self.informacion_adicional
        return partes

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class ErrorTransporte:
    tipo: str
    detalle: str
    endpoint: str
    duracion: float

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def unir_mensajes(mensajes: List[MensajeSRI]) -> str:
    return "; ".join(m.texto() for m in mensajes if m.texto())


@dataclass
class RespuestaRecepcion:
    """
    Resultado de validarComprobante. estado: RECIBIDA | DEVUELTA | DESCONOCIDO.
    """

    estado: str
    mensajes: List[MensajeSRI] = field(default_factory=list)
    raw: str = ""
    error: Optional[ErrorTransporte] = None

    @property
    def recibida(self) -> bool:
        return self.estado == RECIBIDA

    def mensaje_texto(self) -> str:
        return unir_mensajes(self.mensajes)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "mensajes": [m.as_dict() for m in self.mensajes],
            "error": self.error.as_dict() if self.error else None,
        }


@dataclass
class RespuestaAutorizacion:
    """
    Resultado de autorizacionComprobante.
    estado: AUTORIZADO | RECHAZADO | DESCONOCIDO | ERROR (fallo de transporte).
    """

    estado: str
    numero_autorizacion: Optional[str] = None
    fecha_autorizacion: Optional[datetime] = None
    estado_sri: str = ""
    mensajes: List[MensajeSRI] = field(default_factory=list)
    comprobante: Optional[str] = None
    raw: str = ""
    error: Optional[ErrorTransporte] = None

    @property
    def autorizado(self) -> bool:
        return self.estado == AUTORIZADO

    def mensaje_texto(self) -> str:
        return unir_mensajes(self.mensajes)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "estado": self.estado,
            "estado_sri": self.estado_sri,
            "numero_autorizacion": self.numero_autorizacion,
            "fecha_autorizacion": (
                self.fecha_autorizacion.isoformat() if self.fecha_autorizacion else None
            ),
            "mensajes": [m.as_dict() for m in self.mensajes],
            "error": self.error.as_dict() if self.error else None,
        }


# =========================
# Parseo de respuestas (por nombre local, sin depender de prefijos)
# =========================

def _localname(el: etree._Element) -> str:
    if not isinstance(el.tag, str):
        return ""
    return etree.QName(el).localname


def _descendientes(el: etree._Element, nombre: str) -> Iterator[etree._Element]:
    for child in el.iter():
        if child is not el and _localname(child) == nombre:
            yield child


def _primero(el: etree._Element, nombre: str) -> Optional[etree._Element]:
    return next(_descendientes(el, nombre), None)


def _hijo(el: etree._Element, nombre: str) -> Optional[etree._Element]:
    for child in el:
        if _localname(child) == nombre:
            return child
    return None


def _texto_hijo(el: etree._Element, nombre: str) -> str:
    child = _hijo(el, nombre)
    if child is None or child.text is None:
        return ""
    return child.text.strip()


def _parsear_xml(contenido: bytes) -> Optional[etree._Element]:
    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)
    try:
        return etree.fromstring(contenido, parser=parser)
    except etree.XMLSyntaxError:
        return None


def _extraer_mensajes(el: etree._Element) -> List[MensajeSRI]:
    """
    Toma cada <mensaje> que tenga <identificador> (el <mensaje> interno es texto).
    """
    mensajes: List[MensajeSRI] = []
    for nodo in _descendientes(el, "mensaje"):
        if _hijo(nodo, "identificador") is None:
            continue
        mensajes.append(
            MensajeSRI(
                identificador=_texto_hijo(nodo, "identificador"),
                mensaje=_texto_hijo(nodo, "mensaje"),
                informacion_adicional=_texto_hijo(nodo, "informacionAdicional"),
                tipo=_texto_hijo(nodo, "tipo"),
            )
        )
    return mensajes


def _mensaje_fault(root: etree._Element) -> Optional[MensajeSRI]:
    fault = _primero(root, "Fault")
    if fault is None:
        return None
    return MensajeSRI(
        identificador="SOAP_FAULT",
        mensaje=_texto_hijo(fault, "faultstring") or "Fault SOAP sin descripción",
        tipo="ERROR",
    )


def _parse_fecha_autorizacion(valor: str) -> Optional[datetime]:
    if not valor:
        return None
    fecha = parse_datetime(valor)
    if fecha is None:
        for fmt in ("%d/%m/%Y %H:%M:%S", "%d/%m/%Y"):
            try:
                fecha = datetime.strptime(valor, fmt)
                break
            except ValueError:
                continue
    if fecha is not None and timezone.is_naive(fecha):
        fecha = timezone.make_aware(fecha)
    return fecha


def parse_respuesta_recepcion(contenido: bytes) -> RespuestaRecepcion:
    raw = contenido.decode("utf-8", errors="replace")
    root = _parsear_xml(contenido)
    if root is None:
        return RespuestaRecepcion(
            estado=DESCONOCIDO,
            mensajes=[MensajeSRI(identificador="RESPUESTA_INVALIDA", mensaje="La respuesta de recepción no es XML válido", tipo="ERROR")],
            raw=raw,
        )

    fault = _mensaje_fault(root)
    if fault is not None:
        return RespuestaRecepcion(estado=DESCONOCIDO, mensajes=[fault], raw=raw)

    respuesta = _primero(root, "RespuestaRecepcionComprobante")
    contenedor = respuesta if respuesta is not None else root
    estado_el = _hijo(contenedor, "estado") if respuesta is not None else _primero(root, "estado")
    estado_txt = (estado_el.text or "").strip().upper() if estado_el is not None else ""

    if estado_txt == RECIBIDA:
        estado = RECIBIDA
    elif estado_txt == DEVUELTA:
        estado = DEVUELTA
    else:
        estado = DESCONOCIDO

    return RespuestaRecepcion(estado=estado, mensajes=_extraer_mensajes(contenedor), raw=raw)


def parse_respuesta_autorizacion(contenido: bytes) -> RespuestaAutorizacion:
    raw = contenido.decode("utf-8", errors="replace")
    root = _parsear_xml(contenido)
    if root is None:
        return RespuestaAutorizacion(
            estado=DESCONOCIDO,
            mensajes=[MensajeSRI(identificador="RESPUESTA_INVALIDA", mensaje="La respuesta de autorización no es XML válido", tipo="ERROR")],
            raw=raw,
        )

    fault = _mensaje_fault(root)
    if fault is not None:
        return RespuestaAutorizacion(estado=DESCONOCIDO, mensajes=[fault], raw=raw)

    autorizaciones = list(_descendientes(root, "autorizacion"))
    if not autorizaciones:
        # Aún no procesada por el SRI (numeroComprobantes = 0)
        return RespuestaAutorizacion(estado=DESCONOCIDO, estado_sri="", raw=raw)

    # Si hay varias, prevalece la autorizada
    elegida = next(
        (a for a in autorizaciones if _texto_hijo(a, "estado").upper() == AUTORIZADO),
        autorizaciones[0],
    )
    estado_sri = _texto_hijo(elegida, "estado").upper()

    if estado_sri == AUTORIZADO:
        estado = AUTORIZADO
    elif estado_sri in ("NO AUTORIZADO", "NO_AUTORIZADO", RECHAZADO):
        estado = RECHAZADO
    else:
        # EN PROCESO u otros valores
        estado = DESCONOCIDO

    return RespuestaAutorizacion(
        estado=estado,
        numero_autorizacion=_texto_hijo(elegida, "numeroAutorizacion") or None,
        fecha_autorizacion=_parse_fecha_autorizacion(_texto_hijo(elegida, "fechaAutorizacion")),
        estado_sri=estado_sri,
        mensajes=_extraer_mensajes(elegida),
        comprobante=_texto_hijo(elegida, "comprobante") or None,
        raw=raw,
    )


# =========================
# Clasificación de errores de red
# =========================

def _cadena_excepciones(exc: BaseException) -> List[BaseException]:
    vistos: List[BaseException] = []
    pendientes: List[BaseException] = [exc]
    while pendientes:
        actual = pendientes.pop()
        if actual is None or any(actual is v for v in vistos):
            continue
        vistos.append(actual)
        for relacionado in (actual.__cause__, actual.__context__, getattr(actual, "reason", None)):
            if isinstance(relacionado, BaseException):
                pendientes.append(relacionado)
        pendientes.extend(a for a in getattr(actual, "args", ()) if isinstance(a, BaseException))
    return vistos


def clasificar_error_red(exc: BaseException) -> str:
    cadena = _cadena_excepciones(exc)
    if any(isinstance(e, (requests.Timeout, socket.timeout, TimeoutError)) for e in cadena):
        return TIMEOUT
    if any(isinstance(e, socket.gaierror) for e in cadena):
        return DNS
    if any(isinstance(e, ConnectionResetError) for e in cadena):
        return CONEXION_REINICIADA

    texto = " ".join(str(e) for e in cadena).lower()
    if "name or service not known" in texto or "failed to resolve" in texto or "getaddrinfo" in texto:
        return DNS
    if "connection reset" in texto or "econnreset" in texto or "remotedisconnected" in texto:
        return CONEXION_REINICIADA
    if "timed out" in texto:
        return TIMEOUT
    return RED


class SRIClient:
    """
    Cliente SOAP (envelopes crudos sobre requests) para los Web Services Offline del SRI:

    - RecepcionComprobantesOffline: validarComprobante(xml en base64)
    - AutorizacionComprobantesOffline: autorizacionComprobante(claveAccesoComprobante)

    Nunca lanza excepciones de red: devuelve respuestas con `error` poblado.
    """

    def __init__(
        self,
        ambiente: str,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.ambiente = "2" if str(ambiente).lower() in ("2", "produccion", "producción") else "1"
        self.timeout = timeout or SRI_REQUEST_TIMEOUT

        if self.ambiente == "2":
            self.recepcion_url = SRI_PROD_RECEPCION_URL
            self.autorizacion_url = SRI_PROD_AUTORIZACION_URL
        else:
            self.recepcion_url = SRI_TEST_RECEPCION_URL
            self.autorizacion_url = SRI_TEST_AUTORIZACION_URL

        if session is None:
            session = requests.Session()
            session.verify = SRI_SSL_VERIFY
            session.headers.update({"User-Agent": "IntegradorSRI/1.0 (Python/requests)"})

            retry = Retry(
                total=SRI_RETRY_MAX,
                backoff_factor=SRI_RETRY_BACKOFF,
                status_forcelist=[502, 503, 504],
                allowed_methods=["POST"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

        logger.debug(
            "SRIClient ambiente=%s [Recepcion=%s, Autorizacion=%s, timeout=%s]",
            self.ambiente,
            self.recepcion_url,
            self.autorizacion_url,
            self.timeout,
        )

    def _post(self, url: str, envelope: str, clave_acceso: Optional[str]):
        """
        POST del envelope. Retorna (response, None) o (None, ErrorTransporte).
        """
        inicio = time.monotonic()
        try:
            response = self.session.post(
                url,
                data=envelope.encode("utf-8"),
                headers=SOAP_HEADERS,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            duracion = time.monotonic() - inicio
            tipo = clasificar_error_red(exc)
            logger.error(
                "Fallo de transporte SRI [%s] endpoint=%s duracion=%.2fs clave=%s: %s",
                tipo,
                url,
                duracion,
                clave_acceso,
                exc,
            )
            return None, ErrorTransporte(tipo=tipo, detalle=str(exc), endpoint=url, duracion=round(duracion, 3))

        duracion = time.monotonic() - inicio
        logger.info(
            "SRI %s HTTP %s en %.2fs (clave=%s)",
            url,
            response.status_code,
            duracion,
            clave_acceso,
        )

        # 5xx sin cuerpo SOAP: se trata como fallo de transporte
        if response.status_code >= 500 and b"Envelope" not in (response.content or b""):
            logger.error(
                "Respuesta HTTP %s sin SOAP desde %s (%.2fs, clave=%s)",
                response.status_code,
                url,
                duracion,
                clave_acceso,
            )
            return None, ErrorTransporte(
                tipo=HTTP,
                detalle=f"HTTP {response.status_code}",
                endpoint=url,
                duracion=round(duracion, 3),
            )
        return response, None

    # -------------------------
    # Recepción: validarComprobante
    # -------------------------

    def enviar_comprobante(
        self,
        xml_firmado: bytes | str,
        clave_acceso: Optional[str] = None,
    ) -> RespuestaRecepcion:
        if isinstance(xml_firmado, str):
            xml_firmado = xml_firmado.encode("utf-8")

        envelope = ENVELOPE_RECEPCION.format(xml=base64.b64encode(xml_firmado).decode("ascii"))
        response, error = self._post(self.recepcion_url, envelope, clave_acceso)
        if error is not None:
            return RespuestaRecepcion(
                estado=DESCONOCIDO,
                mensajes=[
                    MensajeSRI(
                        identificador=error.tipo,
                        mensaje="No fue posible conectarse al Web Service de Recepción del SRI",
                        informacion_adicional=error.detalle,
                        tipo="ERROR",
                    )
                ],
                error=error,
            )

        resultado = parse_respuesta_recepcion(response.content)
        logger.info(
            "Respuesta RecepcionComprobantesOffline estado=%s, clave=%s, mensajes=%s",
            resultado.estado,
            clave_acceso,
            resultado.mensaje_texto(),
        )
        return resultado

    # -------------------------
    # Autorización: autorizacionComprobante
    # -------------------------

    def consultar_autorizacion(self, clave_acceso: str) -> RespuestaAutorizacion:
        envelope = ENVELOPE_AUTORIZACION.format(clave=clave_acceso)
        response, error = self._post(self.autorizacion_url, envelope, clave_acceso)
        if error is not None:
            return RespuestaAutorizacion(
                estado=ERROR,
                mensajes=[
                    MensajeSRI(
                        identificador=error.tipo,
                        mensaje="No fue posible conectarse al Web Service de Autorización del SRI",
                        informacion_adicional=error.detalle,
                        tipo="ERROR",
                    )
                ],
                error=error,
            )

        resultado = parse_respuesta_autorizacion(response.content)
        logger.info(
            "Respuesta AutorizacionComprobantesOffline estado=%s (%s), clave=%s, mensajes=%s",
            resultado.estado,
            resultado.estado_sri,
            clave_acceso,
            resultado.mensaje_texto(),
        )
        return resultado
