# facturacion/management/commands/procesar_factura.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from facturacion.models import Factura
from facturacion.services.sri.workflow import FacturaWorkflow, ResultadoProceso


class Command(BaseCommand):
    help = (
        "Ejecuta el flujo SRI (firma, recepción y autorización) para una factura.\n"
        "Con --solo-autorizacion únicamente consulta la autorización."
    )

    def add_arguments(self, parser) -> None:
        parser.add_argument("factura_id", type=int, help="ID de la factura (facturacion.Factura.id)")
        parser.add_argument(
            "--solo-autorizacion",
            action="store_true",
            help="No firma ni reenvía; solo consulta la autorización.",
        )
        parser.add_argument(
            "--mostrar-xml",
            action="store_true",
            help="Imprime el XML firmado resultante.",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        factura_id: int = options["factura_id"]

        try:
            factura = Factura.objects.get(pk=factura_id)
        except Factura.DoesNotExist:
            raise CommandError(f"No existe Factura con id={factura_id}")

        self.stdout.write(
            self.style.MIGRATE_HEADING(
                f"▶ Factura {factura.pk} {factura.numero_documento} (estado={factura.estado})"
            )
        )

        workflow = FacturaWorkflow()
        if options["solo_autorizacion"]:
            resultado = workflow.consultar_autorizacion(factura_id)
        else:
            resultado = workflow.procesar(factura_id)

        self._imprimir(resultado, options["mostrar_xml"])

        if not resultado.success:
            raise CommandError(resultado.message)

    def _imprimir(self, resultado: ResultadoProceso, mostrar_xml: bool) -> None:
        data = resultado.data
        estilo = self.style.SUCCESS if resultado.success else self.style.ERROR
        self.stdout.write(estilo(f"  {resultado.message}"))
        self.stdout.write(f"  estado: {data.get('estado')}")
        self.stdout.write(f"  clave_acceso: {data.get('clave_acceso')}")
        if data.get("numero_autorizacion"):
            self.stdout.write(f"  autorización: {data['numero_autorizacion']} ({data.get('fecha_autorizacion')})")
        for error in data.get("errores") or []:
            self.stdout.write(self.style.WARNING(f"  - {error}"))

        historial = data.get("historial_estados") or []
        if historial:
            self.stdout.write(self.style.NOTICE("  historial:"))
            for entrada in historial:
                self.stdout.write(f"    {entrada.get('fecha')}  {entrada.get('estado')}  {entrada.get('mensaje')}")

        if mostrar_xml and data.get("xml_firmado"):
            self.stdout.write(self.style.NOTICE("  XML firmado:"))
            self.stdout.write(data["xml_firmado"])
