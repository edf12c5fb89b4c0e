# facturacion/serializers.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import binascii

from rest_framework import serializers

from facturacion.models import (
    ConfiguracionEmisor,
    EstadoSincronizacion,
    Factura,
    FacturaDetalle,
    FacturaDetalleImpuesto,
)
from facturacion.services.validacion import validar_ruc


# =========================
# Configuración del emisor
# =========================


class ConfiguracionEmisorSerializer(serializers.ModelSerializer):
    """
    Perfil del emisor. El certificado y su clave son de solo escritura:
    nunca se devuelven en las respuestas.
    """

    certificado_base64 = serializers.CharField(write_only=True, required=False, allow_blank=True)
    clave_certificado = serializers.CharField(write_only=True, required=False, allow_blank=True)
    loyverse_token = serializers.CharField(write_only=True, required=False, allow_blank=True)
    tiene_certificado = serializers.BooleanField(read_only=True)
    tiene_token_loyverse = serializers.SerializerMethodField(read_only=True)

    class Meta:
        model = ConfiguracionEmisor
        fields = [
            "id",
            "ambiente",
            # Datos fiscales
            "ruc",
            "razon_social",
            "nombre_comercial",
            "direccion",
            "telefono",
            "email",
            "establecimiento",
            "punto_emision",
            "contribuyente_especial",
            "obligado_contabilidad",
            "impuesto_iva",
            # Integraciones
            "loyverse_token",
            "tiene_token_loyverse",
            "certificado_base64",
            "clave_certificado",
            "tiene_certificado",
            # Automatización
            "automatizacion",
            "intervalo_minutos",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def get_tiene_token_loyverse(self, obj: ConfiguracionEmisor) -> bool:
        return bool(obj.loyverse_token)

    def validate_ruc(self, value: str) -> str:
        v = (value or "").strip()
        if not validar_ruc(v):
            raise serializers.ValidationError("RUC inválido: debe tener 13 dígitos y una estructura válida.")
        return v

    def validate_certificado_base64(self, value: str) -> str:
        v = "".join((value or "").split())
        if not v:
            return v
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError):
            raise serializers.ValidationError("El certificado debe enviarse como base64 válido.")
        return v

    def validate_establecimiento(self, value: str) -> str:
        if len(value) != 3 or not value.isdigit():
            raise serializers.ValidationError("El código de establecimiento debe tener exactamente 3 dígitos.")
        return value

    def validate_punto_emision(self, value: str) -> str:
        if len(value) != 3 or not value.isdigit():
            raise serializers.ValidationError("El código de punto de emisión debe tener exactamente 3 dígitos.")
        return value

    def update(self, instance, validated_data):
        # Campos secretos vacíos en una edición: se conserva el valor guardado
        for campo in ("certificado_base64", "clave_certificado", "loyverse_token"):
            if campo in validated_data and not validated_data[campo]:
                validated_data.pop(campo)
        return super().update(instance, validated_data)


class EstadoSincronizacionSerializer(serializers.ModelSerializer):
    class Meta:
        model = EstadoSincronizacion
        fields = [
            "configuracion",
            "en_ejecucion",
            "en_ejecucion_desde",
            "ultima_sincronizacion",
            "ultimo_resumen",
            "updated_at",
        ]
        read_only_fields = fields


# =========================
# Factura (solo lectura)
# =========================


class FacturaDetalleImpuestoSerializer(serializers.ModelSerializer):
    class Meta:
        model = FacturaDetalleImpuesto
        fields = ["id", "codigo", "codigo_porcentaje", "tarifa", "base_imponible", "valor"]
        read_only_fields = fields


class FacturaDetalleSerializer(serializers.ModelSerializer):
    impuestos = FacturaDetalleImpuestoSerializer(many=True, read_only=True)

    class Meta:
        model = FacturaDetalle
        fields = [
            "id",
            "orden",
            "codigo_principal",
            "descripcion",
            "cantidad",
            "precio_unitario",
            "descuento",
            "precio_total_sin_impuesto",
            "impuestos",
        ]
        read_only_fields = fields


class FacturaListSerializer(serializers.ModelSerializer):
    """Versión liviana para listados (sin XML ni detalle)."""

    numero_documento = serializers.CharField(read_only=True)

    class Meta:
        model = Factura
        fields = [
            "id",
            "loyverse_id",
            "ambiente",
            "numero_documento",
            "fecha_emision",
            "identificacion_comprador",
            "razon_social_comprador",
            "importe_total",
            "clave_acceso",
            "estado",
            "numero_autorizacion",
            "fecha_autorizacion",
            "mensaje_error",
            "created_at",
        ]
        read_only_fields = fields


class FacturaSerializer(serializers.ModelSerializer):
    detalles = FacturaDetalleSerializer(many=True, read_only=True)
    numero_documento = serializers.CharField(read_only=True)

    class Meta:
        model = Factura
        fields = [
            "id",
            "configuracion",
            "loyverse_id",
            # Cabecera tributaria
            "ambiente",
            "tipo_emision",
            "razon_social",
            "nombre_comercial",
            "ruc",
            "cod_doc",
            "estab",
            "pto_emi",
            "secuencial",
            "numero_documento",
            "dir_matriz",
            "fecha_emision",
            "dir_establecimiento",
            "contribuyente_especial",
            "obligado_contabilidad",
            # Comprador
            "tipo_identificacion_comprador",
            "identificacion_comprador",
            "razon_social_comprador",
            "direccion_comprador",
            "telefono_comprador",
            "email_comprador",
            # Totales
            "total_sin_impuestos",
            "total_descuento",
            "propina",
            "importe_total",
            "moneda",
            "info_adicional",
            "detalles",
            # Ciclo SRI
            "clave_acceso",
            "estado",
            "historial_estados",
            "mensaje_error",
            "respuesta_sri",
            "numero_autorizacion",
            "fecha_autorizacion",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields
