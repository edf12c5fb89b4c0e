# facturacion/filters.py
from __future__ import annotations

import django_filters
from django.db.models import Q

from facturacion.models import AMBIENTE_PRODUCCION, AMBIENTE_PRUEBAS, ConfiguracionEmisor, Factura

_AMBIENTES = {
    AMBIENTE_PRUEBAS: AMBIENTE_PRUEBAS,
    AMBIENTE_PRODUCCION: AMBIENTE_PRODUCCION,
    ConfiguracionEmisor.PRUEBAS: AMBIENTE_PRUEBAS,
    ConfiguracionEmisor.PRODUCCION: AMBIENTE_PRODUCCION,
}


class FacturaFilter(django_filters.FilterSet):
    """
    Filtros del listado de facturas.

    - q: secuencial, clave de acceso, autorización, identificación o nombre del comprador.
    - estado: estado SRI (sin distinguir mayúsculas).
    - ambiente: '1'/'2' o 'pruebas'/'produccion'.
    - ruc: identificación del comprador.
    - fecha_desde / fecha_hasta: fecha de registro (created_at).
    """

    q = django_filters.CharFilter(method="filter_q", label="Búsqueda general")
    estado = django_filters.CharFilter(field_name="estado", lookup_expr="iexact")
    ambiente = django_filters.CharFilter(method="filter_ambiente")
    ruc = django_filters.CharFilter(field_name="identificacion_comprador", lookup_expr="exact")
    fecha_desde = django_filters.DateFilter(field_name="created_at", lookup_expr="date__gte")
    fecha_hasta = django_filters.DateFilter(field_name="created_at", lookup_expr="date__lte")

    class Meta:
        model = Factura
        fields = ["q", "estado", "ambiente", "ruc", "fecha_desde", "fecha_hasta"]

    def filter_q(self, queryset, name, value):
        if not value:
            return queryset
        value = value.strip()
        return queryset.filter(
            Q(secuencial__icontains=value)
            | Q(clave_acceso__icontains=value)
            | Q(numero_autorizacion__icontains=value)
            | Q(identificacion_comprador__icontains=value)
            | Q(razon_social_comprador__icontains=value)
            | Q(loyverse_id__icontains=value)
        )

    def filter_ambiente(self, queryset, name, value):
        codigo = _AMBIENTES.get((value or "").strip().lower())
        if codigo is None:
            return queryset.none()
        return queryset.filter(ambiente=codigo)
