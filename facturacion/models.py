# facturacion/models.py
from __future__ import annotations

import base64
import binascii
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional

from django.db import models
from django.utils import timezone


AMBIENTE_PRUEBAS = "1"
AMBIENTE_PRODUCCION = "2"
AMBIENTE_CHOICES = (
    (AMBIENTE_PRUEBAS, "Pruebas"),
    (AMBIENTE_PRODUCCION, "Producción"),
)


class ConfiguracionEmisor(models.Model):
    """
    Perfil del emisor por ambiente: datos tributarios, token de Loyverse,
    certificado de firma (.p12 en base64) y parámetros de automatización.
    """

    PRUEBAS = "pruebas"
    PRODUCCION = "produccion"
    AMBIENTE_CHOICES = (
        (PRUEBAS, "Pruebas"),
        (PRODUCCION, "Producción"),
    )

    INTERVALO_CHOICES = (
        (15, "Cada 15 minutos"),
        (30, "Cada 30 minutos"),
        (60, "Cada hora"),
    )

    ambiente = models.CharField(
        max_length=10,
        choices=AMBIENTE_CHOICES,
        default=PRUEBAS,
        db_index=True,
    )

    # ----- Datos del emisor -----
    ruc = models.CharField(max_length=13)
    razon_social = models.CharField(max_length=300)
    nombre_comercial = models.CharField(max_length=300, blank=True)
    direccion = models.CharField(
        max_length=300,
        help_text="Dirección matriz; también se usa como dirección del establecimiento.",
    )
    telefono = models.CharField(max_length=32, blank=True)
    email = models.EmailField(blank=True)
    establecimiento = models.CharField(max_length=3, default="001")
    punto_emision = models.CharField(max_length=3, default="001")
    contribuyente_especial = models.CharField(
        max_length=13,
        blank=True,
        help_text="Número de resolución de contribuyente especial (vacío si no aplica).",
    )
    obligado_contabilidad = models.BooleanField(default=False)
    impuesto_iva = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        default=Decimal("15.00"),
        help_text="Porcentaje de IVA por defecto cuando el recibo no trae impuestos (ej. 15.00).",
    )

    # ----- Integraciones -----
    loyverse_token = models.CharField(max_length=255, blank=True)
    certificado_base64 = models.TextField(
        blank=True,
        help_text="Contenido del archivo .p12/.pfx codificado en base64.",
    )
    clave_certificado = models.CharField(max_length=255, blank=True)

    # ----- Automatización -----
    automatizacion = models.BooleanField(
        default=False,
        help_text="Si está activa, la sincronización periódica procesa los recibos nuevos.",
    )
    intervalo_minutos = models.PositiveIntegerField(
        choices=INTERVALO_CHOICES,
        default=15,
    )

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Configuración de emisor"
        verbose_name_plural = "Configuraciones de emisor"
        ordering = ["-is_active", "ambiente", "id"]

    def __str__(self) -> str:
        return f"{self.razon_social} ({self.ruc}) [{self.get_ambiente_display()}]"

    @property
    def ambiente_codigo(self) -> str:
        """'1' pruebas, '2' producción (código usado en XML y clave de acceso)."""
        if self.ambiente == self.PRODUCCION:
            return AMBIENTE_PRODUCCION
        return AMBIENTE_PRUEBAS

    @property
    def tiene_certificado(self) -> bool:
        return bool(self.certificado_base64 and self.clave_certificado)

    def certificado_bytes(self) -> Optional[bytes]:
        """Bytes crudos del .p12; None si no hay certificado o el base64 es inválido."""
        if not self.certificado_base64:
            return None
        try:
            return base64.b64decode("".join(self.certificado_base64.split()), validate=True)
        except (binascii.Error, ValueError):
            return None

    @classmethod
    def get_activa(cls, ambiente: Optional[str] = None) -> Optional["ConfiguracionEmisor"]:
        qs = cls.objects.filter(is_active=True)
        if ambiente:
            qs = qs.filter(ambiente=ambiente)
        return qs.order_by("-updated_at").first()


class EstadoSincronizacion(models.Model):
    """
    Estado de la sincronización automática por configuración:
    bandera de ejecución (evita corridas solapadas) y marca de agua temporal.
    """

    configuracion = models.OneToOneField(
        ConfiguracionEmisor,
        related_name="estado_sincronizacion",
        on_delete=models.CASCADE,
    )
    en_ejecucion = models.BooleanField(default=False)
    en_ejecucion_desde = models.DateTimeField(null=True, blank=True)
    ultima_sincronizacion = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Fecha del último lote de recibos obtenido con éxito.",
    )
    ultimo_resumen = models.JSONField(default=dict, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Estado de sincronización"
        verbose_name_plural = "Estados de sincronización"

    def __str__(self) -> str:
        return f"Sincronización {self.configuracion_id} ({'en ejecución' if self.en_ejecucion else 'libre'})"


class Factura(models.Model):
    """
    Factura electrónica SRI generada a partir de un recibo de Loyverse.
    """

    class Estado(models.TextChoices):
        PENDIENTE = "PENDIENTE", "Pendiente"
        FIRMADO = "FIRMADO", "Firmado"
        ENVIADO = "ENVIADO", "Enviado a SRI"
        AUTORIZADO = "AUTORIZADO", "Autorizado"
        RECHAZADO = "RECHAZADO", "Rechazado"
        ERROR = "ERROR", "Error técnico"

    TIPO_IDENT_CHOICES = (
        ("04", "RUC"),
        ("05", "Cédula"),
        ("06", "Pasaporte"),
        ("07", "Consumidor final"),
        ("08", "Identificación del exterior"),
    )

    configuracion = models.ForeignKey(
        ConfiguracionEmisor,
        related_name="facturas",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
    )
    loyverse_id = models.CharField(
        max_length=100,
        unique=True,
        null=True,
        blank=True,
        help_text="Identificador del recibo de origen en Loyverse.",
    )

    # ----- infoTributaria -----
    ambiente = models.CharField(max_length=1, choices=AMBIENTE_CHOICES, default=AMBIENTE_PRUEBAS)
    tipo_emision = models.CharField(max_length=1, default="1")
    razon_social = models.CharField(max_length=300)
    nombre_comercial = models.CharField(max_length=300, blank=True)
    ruc = models.CharField(max_length=13)
    cod_doc = models.CharField(max_length=2, default="01")
    estab = models.CharField(max_length=3, default="001")
    pto_emi = models.CharField(max_length=3, default="001")
    secuencial = models.CharField(max_length=9)
    dir_matriz = models.CharField(max_length=300)

    # ----- infoFactura -----
    fecha_emision = models.CharField(
        max_length=10,
        help_text="Fecha de emisión en formato dd/mm/aaaa.",
    )
    dir_establecimiento = models.CharField(max_length=300, blank=True)
    contribuyente_especial = models.CharField(max_length=13, blank=True)
    obligado_contabilidad = models.CharField(
        max_length=2,
        choices=(("SI", "SI"), ("NO", "NO")),
        default="NO",
    )

    # ----- Comprador -----
    tipo_identificacion_comprador = models.CharField(max_length=2, choices=TIPO_IDENT_CHOICES)
    identificacion_comprador = models.CharField(max_length=20, db_index=True)
    razon_social_comprador = models.CharField(max_length=300)
    direccion_comprador = models.CharField(max_length=300, blank=True)
    telefono_comprador = models.CharField(max_length=32, blank=True)
    email_comprador = models.EmailField(blank=True)

    # ----- Totales -----
    total_sin_impuestos = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total_descuento = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    propina = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    importe_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    moneda = models.CharField(max_length=15, default="DOLAR")

    info_adicional = models.JSONField(
        default=list,
        blank=True,
        help_text="Lista de {'nombre': ..., 'valor': ...} para <infoAdicional>.",
    )

    # ----- Ciclo de vida SRI -----
    clave_acceso = models.CharField(max_length=49, unique=True, null=True, blank=True)
    xml_sin_firma = models.TextField(null=True, blank=True)
    xml_firmado = models.TextField(null=True, blank=True)
    respuesta_sri = models.JSONField(default=dict, blank=True)
    numero_autorizacion = models.CharField(max_length=49, null=True, blank=True)
    fecha_autorizacion = models.DateTimeField(null=True, blank=True)

    estado = models.CharField(
        max_length=12,
        choices=Estado.choices,
        default=Estado.PENDIENTE,
        db_index=True,
    )
    historial_estados = models.JSONField(default=list, blank=True)
    mensaje_error = models.TextField(blank=True)

    # Bloqueo por factura: firma/envío/autorización no se intercalan
    en_proceso = models.BooleanField(default=False)
    en_proceso_desde = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Factura electrónica"
        verbose_name_plural = "Facturas electrónicas"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["ambiente", "estado"], name="fact_amb_estado_idx"),
            models.Index(fields=["created_at"], name="fact_created_idx"),
        ]

    def __str__(self) -> str:
        return f"Factura {self.numero_documento} - {self.razon_social_comprador}"

    @property
    def numero_documento(self) -> str:
        """
        Representación 'EEE-PPP-#########'.
        """
        try:
            sec_int = int(self.secuencial)
        except (TypeError, ValueError):
            return f"{self.estab}-{self.pto_emi}-{self.secuencial}"
        return f"{self.estab}-{self.pto_emi}-{sec_int:09d}"

    def agregar_historial(self, estado: str, mensaje: str = "") -> Dict[str, str]:
        entrada = {
            "estado": estado,
            "fecha": timezone.now().isoformat(),
            "mensaje": mensaje or "",
        }
        historial = list(self.historial_estados or [])
        historial.append(entrada)
        self.historial_estados = historial
        return entrada

    def totales_por_impuesto(self) -> List[Dict[str, Decimal]]:
        """
        Agrupa los impuestos de todas las líneas por (codigo, codigo_porcentaje).
        Es la fuente de <totalConImpuestos>.
        """
        agrupados: "OrderedDict[tuple, Dict[str, Decimal]]" = OrderedDict()
        for detalle in self.detalles.all():
            for imp in detalle.impuestos.all():
                key = (imp.codigo, imp.codigo_porcentaje)
                if key not in agrupados:
                    agrupados[key] = {
                        "codigo": imp.codigo,
                        "codigo_porcentaje": imp.codigo_porcentaje,
                        "tarifa": imp.tarifa,
                        "base_imponible": Decimal("0.00"),
                        "valor": Decimal("0.00"),
                    }
                agrupados[key]["base_imponible"] += imp.base_imponible or Decimal("0.00")
                agrupados[key]["valor"] += imp.valor or Decimal("0.00")
        return list(agrupados.values())


class FacturaDetalle(models.Model):
    """
    Línea de detalle de una factura electrónica.
    """

    factura = models.ForeignKey(
        Factura,
        related_name="detalles",
        on_delete=models.CASCADE,
    )
    orden = models.PositiveIntegerField(default=0)
    codigo_principal = models.CharField(max_length=25)
    descripcion = models.CharField(max_length=300)
    cantidad = models.DecimalField(max_digits=14, decimal_places=6)
    precio_unitario = models.DecimalField(max_digits=14, decimal_places=6)
    descuento = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    precio_total_sin_impuesto = models.DecimalField(max_digits=14, decimal_places=2)

    class Meta:
        verbose_name = "Línea de factura"
        verbose_name_plural = "Líneas de factura"
        ordering = ["orden", "id"]

    def __str__(self) -> str:
        return f"{self.descripcion} x {self.cantidad}"


class FacturaDetalleImpuesto(models.Model):
    """
    Impuesto asociado a una línea de factura (código 2 = IVA).
    """

    detalle = models.ForeignKey(
        FacturaDetalle,
        related_name="impuestos",
        on_delete=models.CASCADE,
    )
    codigo = models.CharField(max_length=2, default="2")
    codigo_porcentaje = models.CharField(max_length=4)
    tarifa = models.DecimalField(max_digits=5, decimal_places=2)
    base_imponible = models.DecimalField(max_digits=14, decimal_places=2)
    valor = models.DecimalField(max_digits=14, decimal_places=2)

    class Meta:
        verbose_name = "Impuesto de línea de factura"
        verbose_name_plural = "Impuestos de líneas de factura"
        ordering = ["id"]

    def __str__(self) -> str:
        return (
            f"Impuesto {self.codigo}-{self.codigo_porcentaje} "
            f"base {self.base_imponible} valor {self.valor}"
        )
