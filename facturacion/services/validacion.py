# facturacion/services/validacion.py
# -*- coding: utf-8 -*-
"""
Validaciones previas al envío al SRI.

Cada función retorna una lista de errores legibles (vacía si todo está bien);
no modifican la factura ni su estado.
"""
from __future__ import annotations

import re
from decimal import Decimal
from typing import List, Optional

from django.core.exceptions import ValidationError
from django.core.validators import validate_email

from facturacion.models import ConfiguracionEmisor, Factura
from facturacion.services.sri.clave_acceso import parse_fecha_emision, validar_clave_acceso

TOLERANCIA = Decimal("0.01")
CONSUMIDOR_FINAL = "9999999999999"


def _provincia_valida(codigo: str) -> bool:
    try:
        provincia = int(codigo[:2])
    except ValueError:
        return False
    return 1 <= provincia <= 24 or provincia == 30


def validar_cedula(cedula: str) -> bool:
    """
    Cédula ecuatoriana: 10 dígitos, provincia válida y dígito verificador módulo 10.
    """
    cedula = (cedula or "").strip()
    if not re.fullmatch(r"\d{10}", cedula) or not _provincia_valida(cedula):
        return False
    if int(cedula[2]) >= 6:
        return False

    total = 0
    for idx, ch in enumerate(cedula[:9]):
        valor = int(ch) * (2 if idx % 2 == 0 else 1)
        total += valor - 9 if valor > 9 else valor
    verificador = (10 - total % 10) % 10
    return verificador == int(cedula[9])


def validar_ruc(ruc: str) -> bool:
    """
    RUC: 13 dígitos, provincia válida, tercer dígito 0-6 o 9 y establecimiento distinto de 000.
    """
    ruc = (ruc or "").strip()
    if not re.fullmatch(r"\d{13}", ruc):
        return False
    if not _provincia_valida(ruc) or ruc[10:] == "000":
        return False
    return ruc[2] in "01234569"


def validar_identificacion_comprador(tipo: str, identificacion: str) -> Optional[str]:
    identificacion = (identificacion or "").strip()
    if not identificacion:
        return "La identificación del comprador es obligatoria."
    if tipo == "04" and not validar_ruc(identificacion):
        return f"RUC del comprador inválido: {identificacion}"
    if tipo == "05" and not validar_cedula(identificacion):
        return f"Cédula del comprador inválida: {identificacion}"
    if tipo == "07" and identificacion != CONSUMIDOR_FINAL:
        return "Consumidor final debe usar la identificación 9999999999999."
    if tipo not in dict(Factura.TIPO_IDENT_CHOICES):
        return f"Tipo de identificación del comprador desconocido: '{tipo}'"
    return None


def _email_valido(email: str) -> bool:
    try:
        validate_email(email)
    except ValidationError:
        return False
    return True


def _difiere(a: Decimal, b: Decimal) -> bool:
    return abs((a or Decimal("0")) - (b or Decimal("0"))) > TOLERANCIA


def validar_calculos(factura: Factura) -> List[str]:
    """
    Invariantes numéricos (tolerancia 0.01):
    - subtotal de línea = cantidad × precio − descuento
    - impuesto = base × tarifa / 100
    - totales de cabecera = suma de líneas
    - importe total = subtotal + impuestos agregados + propina
    """
    errores: List[str] = []
    suma_subtotales = Decimal("0.00")
    suma_descuentos = Decimal("0.00")

    for n, detalle in enumerate(factura.detalles.all().prefetch_related("impuestos"), start=1):
        esperado = detalle.cantidad * detalle.precio_unitario - detalle.descuento
        if _difiere(esperado, detalle.precio_total_sin_impuesto):
            errores.append(
                f"Línea {n}: subtotal {detalle.precio_total_sin_impuesto} "
                f"no coincide con cantidad × precio − descuento ({esperado:.2f})."
            )
        suma_subtotales += detalle.precio_total_sin_impuesto
        suma_descuentos += detalle.descuento

        impuestos = list(detalle.impuestos.all())
        if not impuestos:
            errores.append(f"Línea {n}: no tiene impuestos asociados.")
        for imp in impuestos:
            valor_esperado = imp.base_imponible * imp.tarifa / Decimal("100")
            if _difiere(valor_esperado, imp.valor):
                errores.append(
                    f"Línea {n}: impuesto {imp.valor} no coincide con base × tarifa / 100 "
                    f"({valor_esperado:.2f})."
                )

    if _difiere(suma_subtotales, factura.total_sin_impuestos):
        errores.append(
            f"Total sin impuestos {factura.total_sin_impuestos} no coincide con la suma de líneas ({suma_subtotales:.2f})."
        )
    if _difiere(suma_descuentos, factura.total_descuento):
        errores.append(
            f"Total descuento {factura.total_descuento} no coincide con la suma de líneas ({suma_descuentos:.2f})."
        )

    total_impuestos = sum((t["valor"] for t in factura.totales_por_impuesto()), Decimal("0.00"))
    esperado_total = factura.total_sin_impuestos + total_impuestos + (factura.propina or Decimal("0"))
    if _difiere(esperado_total, factura.importe_total):
        errores.append(
            f"Importe total {factura.importe_total} no coincide con subtotal + impuestos + propina ({esperado_total:.2f})."
        )
    return errores


def validar_factura(factura: Factura) -> List[str]:
    errores: List[str] = []

    requeridos = {
        "ruc": "RUC del emisor",
        "razon_social": "Razón social del emisor",
        "dir_matriz": "Dirección matriz",
        "tipo_identificacion_comprador": "Tipo de identificación del comprador",
        "razon_social_comprador": "Razón social del comprador",
    }
    for campo, etiqueta in requeridos.items():
        if not str(getattr(factura, campo, "") or "").strip():
            errores.append(f"{etiqueta} es obligatorio.")

    if factura.ruc and not validar_ruc(factura.ruc):
        errores.append(f"RUC del emisor inválido: {factura.ruc}")

    if parse_fecha_emision(factura.fecha_emision) is None:
        errores.append(f"Fecha de emisión inválida: '{factura.fecha_emision}' (se espera dd/mm/aaaa).")

    if not re.sub(r"\D", "", factura.secuencial or ""):
        errores.append("Secuencial vacío o sin dígitos.")

    error_comprador = validar_identificacion_comprador(
        factura.tipo_identificacion_comprador,
        factura.identificacion_comprador,
    )
    if error_comprador:
        errores.append(error_comprador)

    if factura.email_comprador and not _email_valido(factura.email_comprador):
        errores.append(f"Email del comprador inválido: {factura.email_comprador}")

    if factura.clave_acceso and not validar_clave_acceso(factura.clave_acceso):
        errores.append(f"Clave de acceso inválida: {factura.clave_acceso}")

    if not factura.detalles.exists():
        errores.append("La factura no tiene líneas de detalle.")
    else:
        errores.extend(validar_calculos(factura))

    return errores


def validar_configuracion(config: Optional[ConfiguracionEmisor], requiere_certificado: bool = True) -> List[str]:
    if config is None:
        return ["No hay una configuración de emisor activa."]

    errores: List[str] = []
    if not validar_ruc(config.ruc):
        errores.append(f"RUC del emisor inválido: {config.ruc}")
    if not (config.razon_social or "").strip():
        errores.append("Razón social del emisor es obligatoria.")
    if not (config.direccion or "").strip():
        errores.append("Dirección del emisor es obligatoria.")
    if config.email and not _email_valido(config.email):
        errores.append(f"Email del emisor inválido: {config.email}")
    if requiere_certificado:
        if not config.tiene_certificado:
            errores.append("No se ha configurado el certificado digital.")
        elif config.certificado_bytes() is None:
            errores.append("El certificado digital no es un base64 válido.")
    return errores
