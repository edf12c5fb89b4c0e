# facturacion/management/commands/sincronizar_loyverse.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from facturacion.models import ConfiguracionEmisor
from facturacion.services.loyverse.client import LoyverseError
from facturacion.services.sincronizacion import SincronizacionEnCurso, SincronizadorLoyverse


class Command(BaseCommand):
    help = "Importa recibos nuevos de Loyverse y los procesa en el SRI (una corrida)."

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--configuracion",
            type=int,
            help="ID de ConfiguracionEmisor; por defecto todas las activas con automatización.",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        config_id = options.get("configuracion")
        if config_id:
            configs = list(ConfiguracionEmisor.objects.filter(pk=config_id))
            if not configs:
                raise CommandError(f"No existe ConfiguracionEmisor con id={config_id}")
        else:
            configs = list(
                ConfiguracionEmisor.objects.filter(is_active=True, automatizacion=True).order_by("pk")
            )
            if not configs:
                self.stdout.write(self.style.WARNING("No hay configuraciones activas con automatización."))
                return

        for config in configs:
            self.stdout.write(self.style.MIGRATE_HEADING(f"▶ {config}"))
            try:
                resumen = SincronizadorLoyverse(config).ejecutar()
            except SincronizacionEnCurso as exc:
                self.stdout.write(self.style.WARNING(f"  {exc}"))
                continue
            except LoyverseError as exc:
                self.stderr.write(self.style.ERROR(f"  {exc}"))
                continue

            self.stdout.write(
                f"  recibos={resumen['recibos']} nuevas={resumen['creadas']} "
                f"existentes={resumen['existentes']} omitidas={resumen['omitidas']} "
                f"autorizadas={resumen['autorizadas']} fallidas={resumen['fallidas']}"
            )
            for error in resumen["errores"]:
                self.stdout.write(self.style.WARNING(f"  - {error}"))
