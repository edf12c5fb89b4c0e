# facturacion/tests/utils.py
# -*- coding: utf-8 -*-
"""
Datos de prueba compartidos: emisor, factura mínima válida y un .p12
autofirmado generado al vuelo con cryptography.
"""
from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from functools import lru_cache

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from cryptography.x509.oid import NameOID

from facturacion.models import ConfiguracionEmisor, Factura, FacturaDetalle, FacturaDetalleImpuesto

RUC_EMISOR = "1790012345001"
CEDULA_COMPRADOR = "1710034065"
CLAVE_P12 = "clave-prueba"


@lru_cache(maxsize=None)
def generar_p12(clave: str = CLAVE_P12, vencido: bool = False) -> bytes:
    """PKCS#12 autofirmado (RSA 2048). Con vencido=True expiró ayer."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    nombre = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "EC"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "EMPRESA TEST SA"),
            x509.NameAttribute(NameOID.COMMON_NAME, "FIRMA PRUEBAS"),
        ]
    )
    ahora = datetime.now(dt_timezone.utc)
    if vencido:
        desde, hasta = ahora - timedelta(days=365), ahora - timedelta(days=1)
    else:
        desde, hasta = ahora - timedelta(days=1), ahora + timedelta(days=365)

    cert = (
        x509.CertificateBuilder()
        .subject_name(nombre)
        .issuer_name(nombre)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(desde)
        .not_valid_after(hasta)
        .sign(key, hashes.SHA256())
    )
    return pkcs12.serialize_key_and_certificates(
        b"firma",
        key,
        cert,
        None,
        BestAvailableEncryption(clave.encode("utf-8")),
    )


def crear_configuracion(**kwargs) -> ConfiguracionEmisor:
    datos = {
        "ambiente": ConfiguracionEmisor.PRUEBAS,
        "ruc": RUC_EMISOR,
        "razon_social": "EMPRESA TEST SA",
        "nombre_comercial": "EMPRESA TEST",
        "direccion": "Av. Amazonas N34-451, Quito",
        "telefono": "022345678",
        "email": "facturacion@example.com",
        "impuesto_iva": Decimal("12.00"),
        "loyverse_token": "token-loyverse",
        "certificado_base64": base64.b64encode(generar_p12()).decode("ascii"),
        "clave_certificado": CLAVE_P12,
        "automatizacion": True,
        "intervalo_minutos": 15,
    }
    datos.update(kwargs)
    return ConfiguracionEmisor.objects.create(**datos)


def crear_factura(config: ConfiguracionEmisor, con_detalle: bool = True, **kwargs) -> Factura:
    """
    Factura PENDIENTE de una línea: 2 × 10.00 − 1.00 = 19.00, IVA 12 % = 2.28, total 21.28.
    """
    datos = {
        "configuracion": config,
        "ambiente": config.ambiente_codigo,
        "razon_social": config.razon_social,
        "nombre_comercial": config.nombre_comercial,
        "ruc": config.ruc,
        "secuencial": "000000123",
        "dir_matriz": config.direccion,
        "fecha_emision": "15/01/2025",
        "dir_establecimiento": config.direccion,
        "obligado_contabilidad": "NO",
        "tipo_identificacion_comprador": "05",
        "identificacion_comprador": CEDULA_COMPRADOR,
        "razon_social_comprador": "JUAN PEREZ",
        "direccion_comprador": "Calle 1",
        "email_comprador": "juan@example.com",
        "total_sin_impuestos": Decimal("19.00"),
        "total_descuento": Decimal("1.00"),
        "propina": Decimal("0.00"),
        "importe_total": Decimal("21.28"),
    }
    datos.update(kwargs)
    factura = Factura.objects.create(**datos)

    if con_detalle:
        detalle = FacturaDetalle.objects.create(
            factura=factura,
            orden=1,
            codigo_principal="P001",
            descripcion="Producto de prueba",
            cantidad=Decimal("2"),
            precio_unitario=Decimal("10.00"),
            descuento=Decimal("1.00"),
            precio_total_sin_impuesto=Decimal("19.00"),
        )
        FacturaDetalleImpuesto.objects.create(
            detalle=detalle,
            codigo="2",
            codigo_porcentaje="2",
            tarifa=Decimal("12.00"),
            base_imponible=Decimal("19.00"),
            valor=Decimal("2.28"),
        )
    return factura


CLIENTE_LOYVERSE = {
    "id": "cus-1",
    "name": "Juan Perez",
    "customer_code": CEDULA_COMPRADOR,
    "email": "juan@example.com",
    "phone_number": "0991234567",
    "address": "Calle 1",
    "city": "Quito",
}


def recibo_loyverse(**kwargs) -> dict:
    """Recibo de venta con la misma línea que crear_factura (2 × 10.00 − 1.00, IVA 12 %)."""
    recibo = {
        "id": "rcp-0001",
        "receipt_number": "1-1001",
        "receipt_type": "SALE",
        "created_at": "2025-01-15T17:00:00.000Z",
        "customer_id": "cus-1",
        "total_money": 21.28,
        "tip": 0,
        "line_items": [
            {
                "item_id": "itm-1",
                "item_name": "Café",
                "variant_name": "Grande",
                "sku": "CAF-01",
                "quantity": 2,
                "price": 10,
                "total_discount": 1,
                "line_taxes": [{"id": "tax-1", "rate": 12}],
            }
        ],
    }
    recibo.update(kwargs)
    return recibo
