# facturacion/viewsets.py
from __future__ import annotations

import logging
from typing import Optional

from django.http import Http404, HttpResponse
from django.shortcuts import get_object_or_404
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from facturacion.filters import FacturaFilter
from facturacion.models import ConfiguracionEmisor, EstadoSincronizacion, Factura
from facturacion.pagination import FacturaPagination
from facturacion.serializers import (
    ConfiguracionEmisorSerializer,
    EstadoSincronizacionSerializer,
    FacturaListSerializer,
    FacturaSerializer,
)
from facturacion.services.loyverse.client import LoyverseError
from facturacion.services.sincronizacion import SincronizacionEnCurso, SincronizadorLoyverse
from facturacion.services.sri.workflow import FacturaWorkflow, ResultadoProceso
from facturacion.services.validacion import validar_configuracion

logger = logging.getLogger(__name__)


def _respuesta_workflow(resultado: ResultadoProceso) -> Response:
    """
    {success, message, data} → HTTP:
    200 si success, 409 si la factura está bloqueada, 404 si no existe, 400 en otro caso.
    """
    if resultado.success:
        http_status = status.HTTP_200_OK
    elif resultado.data.get("en_proceso"):
        http_status = status.HTTP_409_CONFLICT
    elif "estado" not in resultado.data and "no encontrada" in resultado.message:
        http_status = status.HTTP_404_NOT_FOUND
    else:
        http_status = status.HTTP_400_BAD_REQUEST
    return Response(resultado.as_dict(), status=http_status)


class FacturaViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Consulta de facturas y disparo manual del proceso SRI.

    - list/retrieve con filtros (estado, ambiente, ruc, fechas, q).
    - procesar               → firma + envío + autorización
    - consultar-autorizacion → solo autorización (sin reenviar)
    - descargar-xml          → XML firmado (o sin firma si aún no existe)
    """

    pagination_class = FacturaPagination
    filterset_class = FacturaFilter

    def get_queryset(self):
        qs = Factura.objects.select_related("configuracion").order_by("-created_at", "-id")
        if self.action == "retrieve":
            qs = qs.prefetch_related("detalles", "detalles__impuestos")
        return qs

    def get_serializer_class(self):
        if self.action == "list":
            return FacturaListSerializer
        return FacturaSerializer

    def get_workflow(self) -> FacturaWorkflow:
        return FacturaWorkflow()

    @action(detail=True, methods=["post"])
    def procesar(self, request, pk: Optional[str] = None):
        factura = self.get_object()
        resultado = self.get_workflow().procesar(factura.pk)
        return _respuesta_workflow(resultado)

    @action(detail=True, methods=["post"], url_path="consultar-autorizacion")
    def consultar_autorizacion(self, request, pk: Optional[str] = None):
        factura = self.get_object()
        resultado = self.get_workflow().consultar_autorizacion(factura.pk)
        return _respuesta_workflow(resultado)

    @action(detail=True, methods=["get"], url_path="descargar-xml")
    def descargar_xml(self, request, pk: Optional[str] = None):
        factura = self.get_object()

        xml_content = factura.xml_firmado or factura.xml_sin_firma
        if not xml_content:
            raise Http404("No hay XML disponible para esta factura.")

        nombre = factura.clave_acceso or factura.numero_documento
        response = HttpResponse(xml_content, content_type="application/xml; charset=utf-8")
        response["Content-Disposition"] = f'attachment; filename="factura_{nombre}.xml"'
        return response


class ConfiguracionEmisorViewSet(viewsets.ModelViewSet):
    """
    CRUD de perfiles de emisor. El certificado se recibe en base64 y nunca se devuelve.
    """

    serializer_class = ConfiguracionEmisorSerializer
    queryset = ConfiguracionEmisor.objects.all()
    pagination_class = None

    @action(detail=True, methods=["get"])
    def validar(self, request, pk: Optional[str] = None):
        config = self.get_object()
        errores = validar_configuracion(config)
        return Response({"valida": not errores, "errores": errores}, status=status.HTTP_200_OK)


class SincronizacionViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    """
    Estado de la sincronización Loyverse por configuración y ejecución manual.

    - GET  /sincronizacion/                      → estados
    - GET  /sincronizacion/estado/?configuracion= → estado de una configuración
    - POST /sincronizacion/ejecutar/              → corre una sincronización ahora
    """

    serializer_class = EstadoSincronizacionSerializer
    queryset = EstadoSincronizacion.objects.select_related("configuracion").order_by("configuracion_id")
    pagination_class = None

    @staticmethod
    def _configuracion(request) -> ConfiguracionEmisor:
        config_id = request.query_params.get("configuracion") or request.data.get("configuracion")
        if config_id:
            return get_object_or_404(ConfiguracionEmisor, pk=config_id)
        config = ConfiguracionEmisor.get_activa()
        if config is None:
            raise Http404("No hay una configuración de emisor activa.")
        return config

    @action(detail=False, methods=["get"])
    def estado(self, request):
        config = self._configuracion(request)
        estado, _ = EstadoSincronizacion.objects.get_or_create(configuracion=config)
        return Response(self.get_serializer(estado).data, status=status.HTTP_200_OK)

    @action(detail=False, methods=["post"])
    def ejecutar(self, request):
        config = self._configuracion(request)
        if not config.loyverse_token:
            return Response(
                {"detail": "La configuración no tiene token de Loyverse."},
                status=status.HTTP_400_BAD_REQUEST,
            )

        try:
            resumen = SincronizadorLoyverse(config).ejecutar()
        except SincronizacionEnCurso as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_409_CONFLICT)
        except LoyverseError as exc:
            logger.error("Sincronización manual configuración=%s: %s", config.pk, exc)
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        return Response(resumen, status=status.HTTP_200_OK)
