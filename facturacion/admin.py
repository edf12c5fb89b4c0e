# facturacion/admin.py
from __future__ import annotations

from django import forms
from django.contrib import admin

from facturacion.models import (
    ConfiguracionEmisor,
    EstadoSincronizacion,
    Factura,
    FacturaDetalle,
    FacturaDetalleImpuesto,
)


class ConfiguracionEmisorForm(forms.ModelForm):
    clave_certificado = forms.CharField(
        widget=forms.PasswordInput(render_value=True),
        required=False,
    )

    class Meta:
        model = ConfiguracionEmisor
        fields = "__all__"


@admin.register(ConfiguracionEmisor)
class ConfiguracionEmisorAdmin(admin.ModelAdmin):
    form = ConfiguracionEmisorForm
    list_display = (
        "ruc",
        "razon_social",
        "ambiente",
        "automatizacion",
        "intervalo_minutos",
        "is_active",
        "updated_at",
    )
    list_filter = ("ambiente", "automatizacion", "is_active")
    search_fields = ("ruc", "razon_social", "nombre_comercial")
    readonly_fields = ("created_at", "updated_at")
    fieldsets = (
        (
            "Datos generales",
            {
                "fields": (
                    "ambiente",
                    "ruc",
                    "razon_social",
                    "nombre_comercial",
                    "direccion",
                    "telefono",
                    "email",
                    "is_active",
                )
            },
        ),
        (
            "Parámetros SRI",
            {
                "fields": (
                    "establecimiento",
                    "punto_emision",
                    "contribuyente_especial",
                    "obligado_contabilidad",
                    "impuesto_iva",
                )
            },
        ),
        (
            "Certificado de firma",
            {"fields": ("certificado_base64", "clave_certificado")},
        ),
        (
            "Loyverse",
            {"fields": ("loyverse_token", "automatizacion", "intervalo_minutos")},
        ),
        (
            "Auditoría",
            {"fields": ("created_at", "updated_at")},
        ),
    )


@admin.register(EstadoSincronizacion)
class EstadoSincronizacionAdmin(admin.ModelAdmin):
    list_display = ("configuracion", "en_ejecucion", "en_ejecucion_desde", "ultima_sincronizacion", "updated_at")
    readonly_fields = ("ultimo_resumen", "updated_at")


class FacturaDetalleImpuestoInline(admin.TabularInline):
    model = FacturaDetalleImpuesto
    extra = 0


class FacturaDetalleInline(admin.TabularInline):
    model = FacturaDetalle
    extra = 0
    show_change_link = True


@admin.register(Factura)
class FacturaAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "numero_documento",
        "fecha_emision",
        "identificacion_comprador",
        "razon_social_comprador",
        "importe_total",
        "ambiente",
        "estado",
        "created_at",
    )
    list_filter = ("estado", "ambiente", "configuracion")
    search_fields = (
        "secuencial",
        "clave_acceso",
        "numero_autorizacion",
        "identificacion_comprador",
        "razon_social_comprador",
        "loyverse_id",
    )
    readonly_fields = (
        "clave_acceso",
        "numero_autorizacion",
        "fecha_autorizacion",
        "historial_estados",
        "respuesta_sri",
        "xml_sin_firma",
        "xml_firmado",
        "en_proceso",
        "en_proceso_desde",
        "created_at",
        "updated_at",
    )
    inlines = [FacturaDetalleInline]


@admin.register(FacturaDetalle)
class FacturaDetalleAdmin(admin.ModelAdmin):
    list_display = ("factura", "orden", "codigo_principal", "descripcion", "cantidad", "precio_total_sin_impuesto")
    search_fields = ("codigo_principal", "descripcion")
    inlines = [FacturaDetalleImpuestoInline]
