# facturacion/services/sri/clave_acceso.py
# -*- coding: utf-8 -*-
"""
Clave de acceso SRI (49 dígitos):

    fecha(8) + codDoc(2) + ruc(13) + ambiente(1) + estab(3) + ptoEmi(3)
    + secuencial(9) + codigoNumerico(8) + tipoEmision(1) + digito(1)

El generador nunca lanza excepciones: ante datos incompletos usa valores por
defecto y lo deja registrado en el log.
"""
from __future__ import annotations

import logging
import re
import secrets
from datetime import date, datetime
from typing import Any, Optional

from django.utils import timezone

logger = logging.getLogger("facturacion.sri")

LONGITUD_BASE = 48
LONGITUD_CLAVE = 49
PESOS_MODULO11 = (2, 3, 4, 5, 6, 7)

_SOLO_DIGITOS = re.compile(r"\D")


def _digitos(valor: Any) -> str:
    return _SOLO_DIGITOS.sub("", str(valor or ""))


def calcular_digito_verificador(base: str) -> str:
    """
    Dígito verificador módulo 11 sobre la base de 48 dígitos.

    Los pesos 2..7 se aplican posición a posición de izquierda a derecha,
    reiniciando el ciclo cada 6 dígitos. Resultado = 11 - (suma % 11), con
    11 -> 0 y 10 -> 1 (siempre un único dígito).
    """
    total = 0
    for idx, ch in enumerate(_digitos(base)):
        total += int(ch) * PESOS_MODULO11[idx % len(PESOS_MODULO11)]

    modulo = total % 11
    if modulo == 0:
        return "0"

    digito = 11 - modulo
    if digito == 11:
        digito = 0
    elif digito == 10:
        digito = 1
    return str(digito)


def parse_fecha_emision(valor: Any) -> Optional[date]:
    """
    Acepta date/datetime o texto 'dd/mm/aaaa' / 'aaaa-mm-dd'.
    Retorna None si no se puede interpretar.
    """
    if isinstance(valor, datetime):
        return valor.date()
    if isinstance(valor, date):
        return valor

    texto = str(valor or "").strip()
    if not texto:
        return None

    for fmt in ("%d/%m/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(texto[:10], fmt).date()
        except ValueError:
            continue
    return None


def _normalizar_ambiente(valor: Any) -> str:
    texto = str(valor or "").strip().lower()
    if texto in ("2", "produccion", "producción"):
        return "2"
    if texto in ("1", "pruebas", ""):
        return "1"
    digitos = _digitos(texto)
    if digitos:
        return digitos[0]
    logger.warning("Ambiente '%s' no reconocido para clave de acceso; se usa '1'.", valor)
    return "1"


def _normalizar_codigo(valor: Any, longitud: int, defecto: str) -> str:
    digitos = _digitos(valor)
    if not digitos:
        return defecto
    return digitos.zfill(longitud)[-longitud:]


def normalizar_secuencial(valor: Any) -> str:
    """
    Secuencial filtrado a dígitos y rellenado a 9 con ceros a la izquierda.
    Por defecto '000000001'.
    """
    digitos = _digitos(valor)
    if not digitos or int(digitos) == 0:
        return "000000001"
    return digitos.zfill(9)[-9:]


def generar_codigo_numerico() -> str:
    return f"{secrets.randbelow(10 ** 8):08d}"


def generar_clave_acceso(
    factura: Any,
    hoy: Optional[date] = None,
    codigo_numerico: Optional[str] = None,
) -> str:
    """
    Construye la clave de acceso de 49 dígitos a partir de los campos de la factura.

    `hoy` y `codigo_numerico` se pueden inyectar (pruebas); por defecto se usan
    la fecha local y un número aleatorio de 8 dígitos.
    """
    fecha = parse_fecha_emision(getattr(factura, "fecha_emision", None))
    if fecha is None:
        fecha = hoy or timezone.localdate()
        logger.warning(
            "Fecha de emisión '%s' ausente o inválida (factura id=%s); "
            "se usa %s para la clave de acceso.",
            getattr(factura, "fecha_emision", None),
            getattr(factura, "pk", None),
            fecha.isoformat(),
        )

    cod_doc = _normalizar_codigo(getattr(factura, "cod_doc", None), 2, "01")
    ruc = _digitos(getattr(factura, "ruc", None))
    ambiente = _normalizar_ambiente(getattr(factura, "ambiente", None))
    estab = _normalizar_codigo(getattr(factura, "estab", None), 3, "001")
    pto_emi = _normalizar_codigo(getattr(factura, "pto_emi", None), 3, "001")
    secuencial = normalizar_secuencial(getattr(factura, "secuencial", None))
    codigo = _normalizar_codigo(codigo_numerico, 8, "") or generar_codigo_numerico()
    tipo_emision = _normalizar_codigo(getattr(factura, "tipo_emision", None), 1, "1")

    base = (
        fecha.strftime("%d%m%Y")
        + cod_doc
        + ruc
        + ambiente
        + estab
        + pto_emi
        + secuencial
        + codigo
        + tipo_emision
    )

    if len(base) != LONGITUD_BASE:
        logger.error(
            "Base de clave de acceso con longitud %s (esperado %s) para factura id=%s, ruc='%s'; "
            "se ajusta a %s dígitos.",
            len(base),
            LONGITUD_BASE,
            getattr(factura, "pk", None),
            ruc,
            LONGITUD_BASE,
        )
        base = base.ljust(LONGITUD_BASE, "0")[:LONGITUD_BASE]

    return base + calcular_digito_verificador(base)


def validar_clave_acceso(clave: Optional[str]) -> bool:
    """True si la clave tiene 49 dígitos y su dígito verificador es correcto."""
    if not clave or len(clave) != LONGITUD_CLAVE or not clave.isdigit():
        return False
    return calcular_digito_verificador(clave[:LONGITUD_BASE]) == clave[-1]


def extraer_fecha_de_clave(clave: Optional[str]) -> Optional[date]:
    """
    Extrae la fecha (ddmmaaaa) de los primeros 8 dígitos de la clave.
    """
    if not clave or len(clave) < 8:
        return None
    try:
        return datetime.strptime(clave[:8], "%d%m%Y").date()
    except ValueError:
        return None
