# facturacion/services/sri/xml_factura_builder.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List, Optional

from django.conf import settings
from django.utils import timezone
from lxml import etree

from facturacion.models import Factura
from facturacion.services.sri.clave_acceso import (
    extraer_fecha_de_clave,
    generar_clave_acceso,
    normalizar_secuencial,
    parse_fecha_emision,
)

logger = logging.getLogger("facturacion.sri")

SRI_SCHEMA_VERSION = getattr(settings, "SRI_SCHEMA_VERSION", "1.1.0")


def format_decimal(value: Decimal | float | int | str | None) -> str:
    """
    Monto/cantidad con exactamente 2 decimales (ROUND_HALF_UP).
    None se formatea como 0.00.
    """
    if value is None or value == "":
        value = Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return f"{value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):.2f}"


def _texto(value) -> str:
    return "" if value is None else str(value).strip()


def _fecha_emision_sri(factura: Factura) -> str:
    """
    fechaEmision en dd/mm/aaaa. Si la fecha guardada no es válida se usa la
    fecha contenida en la clave de acceso (para que ambas coincidan).
    """
    fecha = parse_fecha_emision(factura.fecha_emision)
    if fecha is None:
        fecha = extraer_fecha_de_clave(factura.clave_acceso) or timezone.localdate()
        logger.warning(
            "Factura id=%s con fecha_emision '%s' inválida; XML usa %s.",
            factura.pk,
            factura.fecha_emision,
            fecha.isoformat(),
        )
    return fecha.strftime("%d/%m/%Y")


def _build_info_tributaria(factura: Factura, clave_acceso: str) -> etree._Element:
    info = etree.Element("infoTributaria")
    etree.SubElement(info, "ambiente").text = _texto(factura.ambiente) or "1"
    etree.SubElement(info, "tipoEmision").text = _texto(factura.tipo_emision) or "1"
    etree.SubElement(info, "razonSocial").text = _texto(factura.razon_social)
    etree.SubElement(info, "nombreComercial").text = (
        _texto(factura.nombre_comercial) or _texto(factura.razon_social)
    )
    etree.SubElement(info, "ruc").text = _texto(factura.ruc)
    etree.SubElement(info, "claveAcceso").text = clave_acceso
    etree.SubElement(info, "codDoc").text = (_texto(factura.cod_doc) or "01").zfill(2)
    etree.SubElement(info, "estab").text = (_texto(factura.estab) or "001").zfill(3)
    etree.SubElement(info, "ptoEmi").text = (_texto(factura.pto_emi) or "001").zfill(3)
    etree.SubElement(info, "secuencial").text = normalizar_secuencial(factura.secuencial)
    etree.SubElement(info, "dirMatriz").text = _texto(factura.dir_matriz)
    return info


def _build_total_con_impuestos(totales: List[Dict[str, Decimal]]) -> etree._Element:
    """
    <totalConImpuestos> agrupado por (codigo, codigoPorcentaje).
    """
    nodo = etree.Element("totalConImpuestos")
    for total in totales:
        total_impuesto = etree.SubElement(nodo, "totalImpuesto")
        etree.SubElement(total_impuesto, "codigo").text = str(total["codigo"])
        etree.SubElement(total_impuesto, "codigoPorcentaje").text = str(total["codigo_porcentaje"])
        etree.SubElement(total_impuesto, "baseImponible").text = format_decimal(total["base_imponible"])
        etree.SubElement(total_impuesto, "tarifa").text = format_decimal(total["tarifa"])
        etree.SubElement(total_impuesto, "valor").text = format_decimal(total["valor"])
    return nodo


def _build_info_factura(factura: Factura) -> etree._Element:
    info = etree.Element("infoFactura")

    etree.SubElement(info, "fechaEmision").text = _fecha_emision_sri(factura)
    etree.SubElement(info, "dirEstablecimiento").text = (
        _texto(factura.dir_establecimiento) or _texto(factura.dir_matriz)
    )

    if _texto(factura.contribuyente_especial):
        etree.SubElement(info, "contribuyenteEspecial").text = _texto(factura.contribuyente_especial)

    etree.SubElement(info, "obligadoContabilidad").text = (
        "SI" if _texto(factura.obligado_contabilidad).upper() == "SI" else "NO"
    )
    etree.SubElement(info, "tipoIdentificacionComprador").text = _texto(
        factura.tipo_identificacion_comprador
    )
    etree.SubElement(info, "razonSocialComprador").text = _texto(factura.razon_social_comprador)
    etree.SubElement(info, "identificacionComprador").text = _texto(factura.identificacion_comprador)

    if _texto(factura.direccion_comprador):
        etree.SubElement(info, "direccionComprador").text = _texto(factura.direccion_comprador)

    etree.SubElement(info, "totalSinImpuestos").text = format_decimal(factura.total_sin_impuestos)
    etree.SubElement(info, "totalDescuento").text = format_decimal(factura.total_descuento)
    info.append(_build_total_con_impuestos(factura.totales_por_impuesto()))
    etree.SubElement(info, "propina").text = format_decimal(factura.propina)
    etree.SubElement(info, "importeTotal").text = format_decimal(factura.importe_total)
    etree.SubElement(info, "moneda").text = _texto(factura.moneda) or "DOLAR"
    return info


def _build_detalles(factura: Factura) -> etree._Element:
    detalles = etree.Element("detalles")

    for linea in factura.detalles.all().prefetch_related("impuestos"):
        detalle = etree.SubElement(detalles, "detalle")
        etree.SubElement(detalle, "codigoPrincipal").text = _texto(linea.codigo_principal)
        etree.SubElement(detalle, "descripcion").text = _texto(linea.descripcion)
        etree.SubElement(detalle, "cantidad").text = format_decimal(linea.cantidad)
        etree.SubElement(detalle, "precioUnitario").text = format_decimal(linea.precio_unitario)
        etree.SubElement(detalle, "descuento").text = format_decimal(linea.descuento)
        etree.SubElement(detalle, "precioTotalSinImpuesto").text = format_decimal(
            linea.precio_total_sin_impuesto
        )

        impuestos = etree.SubElement(detalle, "impuestos")
        for imp in linea.impuestos.all():
            impuesto = etree.SubElement(impuestos, "impuesto")
            etree.SubElement(impuesto, "codigo").text = str(imp.codigo)
            etree.SubElement(impuesto, "codigoPorcentaje").text = str(imp.codigo_porcentaje)
            etree.SubElement(impuesto, "tarifa").text = format_decimal(imp.tarifa)
            etree.SubElement(impuesto, "baseImponible").text = format_decimal(imp.base_imponible)
            etree.SubElement(impuesto, "valor").text = format_decimal(imp.valor)

    return detalles


def _build_info_adicional(factura: Factura) -> Optional[etree._Element]:
    """
    <infoAdicional> con los pares nombre/valor de la factura.
    Solo se genera si hay al menos un campo con valor.
    """
    campos = []
    for campo in factura.info_adicional or []:
        if not isinstance(campo, dict):
            continue
        nombre = _texto(campo.get("nombre"))
        valor = _texto(campo.get("valor"))
        if nombre and valor:
            campos.append((nombre, valor[:300]))

    if not campos:
        return None

    info_adicional = etree.Element("infoAdicional")
    for nombre, valor in campos:
        campo_adic = etree.SubElement(info_adicional, "campoAdicional", nombre=nombre)
        campo_adic.text = valor
    return info_adicional


def build_factura_xml(
    factura: Factura,
    generar_clave: Callable[[Factura], str] = generar_clave_acceso,
) -> str:
    """
    Construye el XML de factura SRI (versión 1.1.0) a partir de una Factura.

    Si la factura no tiene clave de acceso se genera una nueva y se asigna
    en memoria a `factura.clave_acceso`; guardarla es responsabilidad de quien
    llama (cada llamada sin clave produce un código numérico distinto).

    Retorna el XML como string UTF-8 (incluye declaración XML).
    """
    clave_acceso = factura.clave_acceso
    if not clave_acceso:
        clave_acceso = generar_clave(factura)
        factura.clave_acceso = clave_acceso
        logger.info("Clave de acceso generada para factura id=%s: %s", factura.pk, clave_acceso)

    logger.info("Construyendo XML para factura id=%s, clave=%s", factura.pk, clave_acceso)

    root = etree.Element("factura", id="comprobante", version=SRI_SCHEMA_VERSION)
    root.append(_build_info_tributaria(factura, clave_acceso))
    root.append(_build_info_factura(factura))
    root.append(_build_detalles(factura))

    info_adicional = _build_info_adicional(factura)
    if info_adicional is not None:
        root.append(info_adicional)

    return etree.tostring(
        root,
        encoding="UTF-8",
        xml_declaration=True,
        pretty_print=False,
    ).decode("utf-8")
