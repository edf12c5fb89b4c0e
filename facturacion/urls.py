# facturacion/urls.py
from __future__ import annotations

from rest_framework.routers import DefaultRouter

from facturacion.viewsets import ConfiguracionEmisorViewSet, FacturaViewSet, SincronizacionViewSet

app_name = "facturacion"

router = DefaultRouter()
router.register(r"facturas", FacturaViewSet, basename="factura")
router.register(r"configuraciones", ConfiguracionEmisorViewSet, basename="configuracion")
router.register(r"sincronizacion", SincronizacionViewSet, basename="sincronizacion")

urlpatterns = router.urls
