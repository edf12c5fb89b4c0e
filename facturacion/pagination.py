# facturacion/pagination.py
from __future__ import annotations

from decimal import Decimal
from math import ceil

from django.db.models import Count, Sum
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response


class FacturaPagination(PageNumberPagination):
    """
    Paginador del listado de facturas.

    Además de los metadatos de página (count, page_size, total_pages,
    current_page) devuelve un `resumen` calculado sobre todo el queryset
    filtrado, no solo la página actual:

        {"por_estado": {"AUTORIZADO": 10, "ERROR": 2}, "importe_total": "123.45"}

    Con eso el panel muestra cuántas facturas quedaron pendientes de
    autorización sin recorrer todas las páginas.
    """

    page_size = 50
    page_size_query_param = "page_size"
    max_page_size = 500

    def paginate_queryset(self, queryset, request, view=None):
        self.resumen = self._resumir(queryset)
        return super().paginate_queryset(queryset, request, view)

    @staticmethod
    def _resumir(queryset) -> dict:
        sin_orden = queryset.order_by()
        por_estado = {
            fila["estado"]: fila["total"]
            for fila in sin_orden.values("estado").annotate(total=Count("id"))
        }
        importe = sin_orden.aggregate(importe=Sum("importe_total"))["importe"] or Decimal("0")
        return {"por_estado": por_estado, "importe_total": f"{importe:.2f}"}

    def get_paginated_response(self, data):
        total = self.page.paginator.count
        page_size = self.get_page_size(self.request) or self.page_size

        return Response(
            {
                "count": total,
                "page_size": page_size,
                "total_pages": ceil(total / page_size) if page_size else 1,
                "current_page": self.page.number,
                "next": self.get_next_link(),
                "previous": self.get_previous_link(),
                "resumen": self.resumen,
                "results": data,
            }
        )
