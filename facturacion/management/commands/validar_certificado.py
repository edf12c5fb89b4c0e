# facturacion/management/commands/validar_certificado.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from facturacion.models import ConfiguracionEmisor
from facturacion.services.sri.signer import CertificateError, cargar_pkcs12


class Command(BaseCommand):
    help = "Verifica que el certificado .p12 de una configuración se pueda abrir y esté vigente."

    def add_arguments(self, parser) -> None:
        parser.add_argument("configuracion_id", type=int, help="ID de ConfiguracionEmisor")

    def handle(self, *args: Any, **options: Any) -> None:
        config_id = options["configuracion_id"]
        try:
            config = ConfiguracionEmisor.objects.get(pk=config_id)
        except ConfiguracionEmisor.DoesNotExist:
            raise CommandError(f"No existe ConfiguracionEmisor con id={config_id}")

        p12 = config.certificado_bytes()
        if not p12:
            raise CommandError("La configuración no tiene un certificado en base64 válido.")
        self.stdout.write(self.style.SUCCESS("OK: certificado presente."))

        try:
            cert = cargar_pkcs12(p12, config.clave_certificado, verificar_vigencia=False)
        except CertificateError as exc:
            raise CommandError(f"No se pudo abrir el certificado: {exc}")
        self.stdout.write(self.style.SUCCESS("OK: certificado legible con la clave configurada."))

        self.stdout.write(f"INFO: Sujeto: {cert.sujeto}")
        self.stdout.write(f"INFO: Emisor: {cert.emisor}")

        try:
            cargar_pkcs12(p12, config.clave_certificado, verificar_vigencia=True)
        except CertificateError as exc:
            raise CommandError(str(exc))
        self.stdout.write(
            self.style.SUCCESS(f"OK: certificado vigente ({cert.valido_desde} → {cert.valido_hasta}).")
        )
