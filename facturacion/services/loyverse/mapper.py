# facturacion/services/loyverse/mapper.py
# -*- coding: utf-8 -*-
"""
Conversión recibo Loyverse → Factura SRI.

Los montos se recalculan desde cantidad, precio, descuento y tarifa
(ROUND_HALF_UP a 2 decimales) para que la factura cumpla:

    subtotal línea = cantidad × precio − descuento
    impuesto       = base × tarifa / 100
    importe total  = subtotal + impuestos + propina
"""
from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timezone as dt_timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from django.db import transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from facturacion.models import ConfiguracionEmisor, Factura, FacturaDetalle, FacturaDetalleImpuesto
from facturacion.services.sri.clave_acceso import normalizar_secuencial

logger = logging.getLogger("facturacion.loyverse")

CODIGO_IVA = "2"
CONSUMIDOR_FINAL = "9999999999999"

# Tarifa IVA (%) → codigoPorcentaje SRI
CODIGOS_PORCENTAJE_IVA = {
    Decimal("0"): "0",
    Decimal("12"): "2",
    Decimal("14"): "3",
    Decimal("15"): "4",
    Decimal("5"): "5",
    Decimal("8"): "8",
    Decimal("13"): "10",
}

CENTAVO = Decimal("0.01")


class MapeoError(Exception):
    """El recibo no se puede convertir en factura (sin cliente, reembolso, etc.)."""


def _dec(valor: Any) -> Decimal:
    """Acepta números, strings o {'amount': n}."""
    if isinstance(valor, dict):
        valor = valor.get("amount", valor.get("money_amount", 0))
    if valor is None or valor == "":
        return Decimal("0")
    try:
        return Decimal(str(valor))
    except (InvalidOperation, ValueError) as exc:
        raise MapeoError(f"Monto inválido en recibo: {valor!r}") from exc


def _q(valor: Decimal) -> Decimal:
    return valor.quantize(CENTAVO, rounding=ROUND_HALF_UP)


def codigo_porcentaje_iva(tarifa: Decimal) -> str:
    tarifa = _dec(tarifa).normalize()
    codigo = CODIGOS_PORCENTAJE_IVA.get(tarifa)
    if codigo is None:
        codigo = str(int(tarifa.to_integral_value(rounding=ROUND_HALF_UP)))
        logger.warning("Tarifa IVA %s%% sin código SRI conocido; se usa '%s'.", tarifa, codigo)
    return codigo


def tipo_identificacion(identificacion: str) -> str:
    """
    04 RUC (13 dígitos), 05 cédula (10 dígitos), 07 consumidor final, 06 pasaporte (otros).
    """
    ident = (identificacion or "").strip()
    if ident == CONSUMIDOR_FINAL:
        return "07"
    if ident.isdigit() and len(ident) == 13:
        return "04"
    if ident.isdigit() and len(ident) == 10:
        return "05"
    return "06"


@dataclass
class ImpuestoMapeado:
    codigo: str
    codigo_porcentaje: str
    tarifa: Decimal
    base_imponible: Decimal
    valor: Decimal


@dataclass
class LineaMapeada:
    codigo_principal: str
    descripcion: str
    cantidad: Decimal
    precio_unitario: Decimal
    descuento: Decimal
    precio_total_sin_impuesto: Decimal
    impuestos: List[ImpuestoMapeado] = field(default_factory=list)


@dataclass
class FacturaMapeada:
    cabecera: Dict[str, Any]
    lineas: List[LineaMapeada]

    def totales_por_impuesto(self) -> List[ImpuestoMapeado]:
        agrupados: "OrderedDict[Tuple[str, str], ImpuestoMapeado]" = OrderedDict()
        for linea in self.lineas:
            for imp in linea.impuestos:
                key = (imp.codigo, imp.codigo_porcentaje)
                if key not in agrupados:
                    agrupados[key] = ImpuestoMapeado(imp.codigo, imp.codigo_porcentaje, imp.tarifa, Decimal("0"), Decimal("0"))
                agrupados[key].base_imponible += imp.base_imponible
                agrupados[key].valor += imp.valor
        return list(agrupados.values())


def _tarifas_linea(item: Dict[str, Any], tarifa_defecto: Decimal) -> List[Decimal]:
    for clave in ("line_taxes", "taxes"):
        if clave in item:
            tarifas = [_dec(t.get("rate")) for t in (item.get(clave) or []) if isinstance(t, dict)]
            return tarifas or [Decimal("0")]
    if "tax_rate" in item:
        return [_dec(item.get("tax_rate"))]
    return [tarifa_defecto]


def _mapear_linea(item: Dict[str, Any], tarifa_defecto: Decimal) -> LineaMapeada:
    cantidad = _dec(item.get("quantity"))
    precio = _dec(item.get("price"))
    descuento = _q(_dec(item.get("total_discount", item.get("discount"))))
    subtotal = _q(cantidad * precio - descuento)

    descripcion = (item.get("item_name") or "Producto").strip()
    variante = (item.get("variant_name") or "").strip()
    if variante:
        descripcion = f"{descripcion} - {variante}"

    codigo = str(item.get("sku") or item.get("item_id") or item.get("id") or "SIN-CODIGO")[:25]

    impuestos = []
    for tarifa in _tarifas_linea(item, tarifa_defecto):
        impuestos.append(
            ImpuestoMapeado(
                codigo=CODIGO_IVA,
                codigo_porcentaje=codigo_porcentaje_iva(tarifa),
                tarifa=tarifa,
                base_imponible=subtotal,
                valor=_q(subtotal * tarifa / Decimal("100")),
            )
        )

    return LineaMapeada(
        codigo_principal=codigo,
        descripcion=descripcion[:300],
        cantidad=cantidad,
        precio_unitario=precio,
        descuento=descuento,
        precio_total_sin_impuesto=subtotal,
        impuestos=impuestos,
    )


def _fecha_emision(recibo: Dict[str, Any]) -> str:
    texto = recibo.get("receipt_date") or recibo.get("created_at") or ""
    try:
        fecha = parse_datetime(texto) if texto else None
    except ValueError:
        # Formato ISO correcto pero fecha imposible (p. ej. 30 de febrero)
        fecha = None
    if fecha is None:
        logger.warning("Recibo %s sin fecha válida ('%s'); se usa la fecha actual.", recibo.get("receipt_number"), texto)
        return timezone.localdate().strftime("%d/%m/%Y")
    if timezone.is_naive(fecha):
        fecha = timezone.make_aware(fecha, dt_timezone.utc)
    return timezone.localtime(fecha).strftime("%d/%m/%Y")


def mapear_recibo(
    recibo: Dict[str, Any],
    cliente: Optional[Dict[str, Any]],
    config: ConfiguracionEmisor,
) -> FacturaMapeada:
    """
    Recibo + cliente de Loyverse → FacturaMapeada (sin guardar).
    """
    if (recibo.get("receipt_type") or "SALE").upper() == "REFUND":
        raise MapeoError("Los recibos de reembolso no generan factura.")
    if not cliente:
        raise MapeoError("La factura no tiene un cliente asociado")

    identificacion = re.sub(r"\s", "", str(cliente.get("customer_code") or ""))
    if not identificacion:
        raise MapeoError("El cliente no tiene un RUC/cédula asociado (customer_code)")

    items = recibo.get("line_items") or recibo.get("items") or []
    if not items:
        raise MapeoError("El recibo no tiene líneas de detalle.")

    tarifa_defecto = _dec(config.impuesto_iva)
    lineas = [_mapear_linea(item, tarifa_defecto) for item in items]

    total_sin_impuestos = sum((l.precio_total_sin_impuesto for l in lineas), Decimal("0"))
    total_descuento = sum((l.descuento for l in lineas), Decimal("0"))
    total_impuestos = sum((i.valor for l in lineas for i in l.impuestos), Decimal("0"))
    propina = _q(_dec(recibo.get("tip")))
    importe_total = _q(total_sin_impuestos + total_impuestos + propina)

    total_loyverse = recibo.get("total_money")
    if total_loyverse is not None and abs(_dec(total_loyverse) - importe_total) > CENTAVO:
        logger.warning(
            "Recibo %s: total Loyverse %s difiere del total calculado %s.",
            recibo.get("receipt_number"),
            _dec(total_loyverse),
            importe_total,
        )

    info_adicional = []
    if cliente.get("email"):
        info_adicional.append({"nombre": "Email", "valor": cliente["email"]})
    if cliente.get("phone_number"):
        info_adicional.append({"nombre": "Teléfono", "valor": cliente["phone_number"]})
    if recibo.get("receipt_number"):
        info_adicional.append({"nombre": "Recibo", "valor": str(recibo["receipt_number"])})

    direccion_cliente = ", ".join(
        p for p in (cliente.get("address"), cliente.get("city")) if p
    )

    cabecera = {
        "configuracion": config,
        "loyverse_id": str(recibo.get("id") or recibo.get("receipt_number")),
        "ambiente": config.ambiente_codigo,
        "tipo_emision": "1",
        "razon_social": config.razon_social,
        "nombre_comercial": config.nombre_comercial,
        "ruc": config.ruc,
        "cod_doc": "01",
        "estab": config.establecimiento or "001",
        "pto_emi": config.punto_emision or "001",
        "secuencial": normalizar_secuencial(recibo.get("receipt_number")),
        "dir_matriz": config.direccion,
        "fecha_emision": _fecha_emision(recibo),
        "dir_establecimiento": config.direccion,
        "contribuyente_especial": config.contribuyente_especial,
        "obligado_contabilidad": "SI" if config.obligado_contabilidad else "NO",
        "tipo_identificacion_comprador": tipo_identificacion(identificacion),
        "identificacion_comprador": identificacion,
        "razon_social_comprador": (cliente.get("name") or "").strip() or "CONSUMIDOR FINAL",
        "direccion_comprador": direccion_cliente[:300],
        "telefono_comprador": cliente.get("phone_number") or "",
        "email_comprador": cliente.get("email") or "",
        "total_sin_impuestos": _q(total_sin_impuestos),
        "total_descuento": _q(total_descuento),
        "propina": propina,
        "importe_total": importe_total,
        "moneda": "DOLAR",
        "info_adicional": info_adicional,
    }
    return FacturaMapeada(cabecera=cabecera, lineas=lineas)


def crear_factura_desde_recibo(
    recibo: Dict[str, Any],
    cliente: Optional[Dict[str, Any]],
    config: ConfiguracionEmisor,
) -> Tuple[Factura, bool]:
    """
    Crea la Factura PENDIENTE para el recibo. Si ya existe (mismo loyverse_id)
    se devuelve la existente con creada=False.
    """
    loyverse_id = str(recibo.get("id") or recibo.get("receipt_number"))
    existente = Factura.objects.filter(loyverse_id=loyverse_id).first()
    if existente is not None:
        return existente, False

    mapeada = mapear_recibo(recibo, cliente, config)

    with transaction.atomic():
        factura = Factura(**mapeada.cabecera)
        factura.agregar_historial(Factura.Estado.PENDIENTE, f"Importada desde Loyverse ({recibo.get('receipt_number')})")
        factura.save()
        for orden, linea in enumerate(mapeada.lineas, start=1):
            detalle = FacturaDetalle.objects.create(
                factura=factura,
                orden=orden,
                codigo_principal=linea.codigo_principal,
                descripcion=linea.descripcion,
                cantidad=linea.cantidad,
                precio_unitario=linea.precio_unitario,
                descuento=linea.descuento,
                precio_total_sin_impuesto=linea.precio_total_sin_impuesto,
            )
            for imp in linea.impuestos:
                FacturaDetalleImpuesto.objects.create(
                    detalle=detalle,
                    codigo=imp.codigo,
                    codigo_porcentaje=imp.codigo_porcentaje,
                    tarifa=imp.tarifa,
                    base_imponible=imp.base_imponible,
                    valor=imp.valor,
                )

    logger.info("Factura id=%s creada desde recibo Loyverse %s", factura.pk, loyverse_id)
    return factura, True
