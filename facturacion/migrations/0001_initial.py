from decimal import Decimal

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="ConfiguracionEmisor",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("ambiente", models.CharField(choices=[("pruebas", "Pruebas"), ("produccion", "Producción")], db_index=True, default="pruebas", max_length=10)),
                ("ruc", models.CharField(max_length=13)),
                ("razon_social", models.CharField(max_length=300)),
                ("nombre_comercial", models.CharField(blank=True, max_length=300)),
                ("direccion", models.CharField(help_text="Dirección matriz; también se usa como dirección del establecimiento.", max_length=300)),
                ("telefono", models.CharField(blank=True, max_length=32)),
                ("email", models.EmailField(blank=True, max_length=254)),
                ("establecimiento", models.CharField(default="001", max_length=3)),
                ("punto_emision", models.CharField(default="001", max_length=3)),
                ("contribuyente_especial", models.CharField(blank=True, help_text="Número de resolución de contribuyente especial (vacío si no aplica).", max_length=13)),
                ("obligado_contabilidad", models.BooleanField(default=False)),
                ("impuesto_iva", models.DecimalField(decimal_places=2, default=Decimal("15.00"), help_text="Porcentaje de IVA por defecto cuando el recibo no trae impuestos (ej. 15.00).", max_digits=5)),
                ("loyverse_token", models.CharField(blank=True, max_length=255)),
                ("certificado_base64", models.TextField(blank=True, help_text="Contenido del archivo .p12/.pfx codificado en base64.")),
                ("clave_certificado", models.CharField(blank=True, max_length=255)),
                ("automatizacion", models.BooleanField(default=False, help_text="Si está activa, la sincronización periódica procesa los recibos nuevos.")),
                ("intervalo_minutos", models.PositiveIntegerField(choices=[(15, "Cada 15 minutos"), (30, "Cada 30 minutos"), (60, "Cada hora")], default=15)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Configuración de emisor",
                "verbose_name_plural": "Configuraciones de emisor",
                "ordering": ["-is_active", "ambiente", "id"],
            },
        ),
        migrations.CreateModel(
            name="EstadoSincronizacion",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("en_ejecucion", models.BooleanField(default=False)),
                ("en_ejecucion_desde", models.DateTimeField(blank=True, null=True)),
                ("ultima_sincronizacion", models.DateTimeField(blank=True, help_text="Fecha del último lote de recibos obtenido con éxito.", null=True)),
                ("ultimo_resumen", models.JSONField(blank=True, default=dict)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("configuracion", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="estado_sincronizacion", to="facturacion.configuracionemisor")),
            ],
            options={
                "verbose_name": "Estado de sincronización",
                "verbose_name_plural": "Estados de sincronización",
            },
        ),
        migrations.CreateModel(
            name="Factura",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("loyverse_id", models.CharField(blank=True, help_text="Identificador del recibo de origen en Loyverse.", max_length=100, null=True, unique=True)),
                ("ambiente", models.CharField(choices=[("1", "Pruebas"), ("2", "Producción")], default="1", max_length=1)),
                ("tipo_emision", models.CharField(default="1", max_length=1)),
                ("razon_social", models.CharField(max_length=300)),
                ("nombre_comercial", models.CharField(blank=True, max_length=300)),
                ("ruc", models.CharField(max_length=13)),
                ("cod_doc", models.CharField(default="01", max_length=2)),
                ("estab", models.CharField(default="001", max_length=3)),
                ("pto_emi", models.CharField(default="001", max_length=3)),
                ("secuencial", models.CharField(max_length=9)),
                ("dir_matriz", models.CharField(max_length=300)),
                ("fecha_emision", models.CharField(help_text="Fecha de emisión en formato dd/mm/aaaa.", max_length=10)),
                ("dir_establecimiento", models.CharField(blank=True, max_length=300)),
                ("contribuyente_especial", models.CharField(blank=True, max_length=13)),
                ("obligado_contabilidad", models.CharField(choices=[("SI", "SI"), ("NO", "NO")], default="NO", max_length=2)),
                ("tipo_identificacion_comprador", models.CharField(choices=[("04", "RUC"), ("05", "Cédula"), ("06", "Pasaporte"), ("07", "Consumidor final"), ("08", "Identificación del exterior")], max_length=2)),
                ("identificacion_comprador", models.CharField(db_index=True, max_length=20)),
                ("razon_social_comprador", models.CharField(max_length=300)),
                ("direccion_comprador", models.CharField(blank=True, max_length=300)),
                ("telefono_comprador", models.CharField(blank=True, max_length=32)),
                ("email_comprador", models.EmailField(blank=True, max_length=254)),
                ("total_sin_impuestos", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("total_descuento", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("propina", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("importe_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("moneda", models.CharField(default="DOLAR", max_length=15)),
                ("info_adicional", models.JSONField(blank=True, default=list, help_text="Lista de {'nombre': ..., 'valor': ...} para <infoAdicional>.")),
                ("clave_acceso", models.CharField(blank=True, max_length=49, null=True, unique=True)),
                ("xml_sin_firma", models.TextField(blank=True, null=True)),
                ("xml_firmado", models.TextField(blank=True, null=True)),
                ("respuesta_sri", models.JSONField(blank=True, default=dict)),
                ("numero_autorizacion", models.CharField(blank=True, max_length=49, null=True)),
                ("fecha_autorizacion", models.DateTimeField(blank=True, null=True)),
                ("estado", models.CharField(choices=[("PENDIENTE", "Pendiente"), ("FIRMADO", "Firmado"), ("ENVIADO", "Enviado a SRI"), ("AUTORIZADO", "Autorizado"), ("RECHAZADO", "Rechazado"), ("ERROR", "Error técnico")], db_index=True, default="PENDIENTE", max_length=12)),
                ("historial_estados", models.JSONField(blank=True, default=list)),
                ("mensaje_error", models.TextField(blank=True)),
                ("en_proceso", models.BooleanField(default=False)),
                ("en_proceso_desde", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("configuracion", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name="facturas", to="facturacion.configuracionemisor")),
            ],
            options={
                "verbose_name": "Factura electrónica",
                "verbose_name_plural": "Facturas electrónicas",
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["ambiente", "estado"], name="fact_amb_estado_idx"),
                    models.Index(fields=["created_at"], name="fact_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="FacturaDetalle",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("orden", models.PositiveIntegerField(default=0)),
                ("codigo_principal", models.CharField(max_length=25)),
                ("descripcion", models.CharField(max_length=300)),
                ("cantidad", models.DecimalField(decimal_places=6, max_digits=14)),
                ("precio_unitario", models.DecimalField(decimal_places=6, max_digits=14)),
                ("descuento", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("precio_total_sin_impuesto", models.DecimalField(decimal_places=2, max_digits=14)),
                ("factura", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="detalles", to="facturacion.factura")),
            ],
            options={
                "verbose_name": "Línea de factura",
                "verbose_name_plural": "Líneas de factura",
                "ordering": ["orden", "id"],
            },
        ),
        migrations.CreateModel(
            name="FacturaDetalleImpuesto",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("codigo", models.CharField(default="2", max_length=2)),
                ("codigo_porcentaje", models.CharField(max_length=4)),
                ("tarifa", models.DecimalField(decimal_places=2, max_digits=5)),
                ("base_imponible", models.DecimalField(decimal_places=2, max_digits=14)),
                ("valor", models.DecimalField(decimal_places=2, max_digits=14)),
                ("detalle", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="impuestos", to="facturacion.facturadetalle")),
            ],
            options={
                "verbose_name": "Impuesto de línea de factura",
                "verbose_name_plural": "Impuestos de líneas de factura",
                "ordering": ["id"],
            },
        ),
    ]
