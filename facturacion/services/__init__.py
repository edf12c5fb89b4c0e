# facturacion/services/__init__.py
"""
Servicios de dominio para la facturación electrónica:

- sri/: clave de acceso, XML, firma, cliente SOAP y flujo de emisión.
- loyverse/: cliente REST y mapeo de recibos a facturas.
- validacion.py: validaciones previas al envío.
- sincronizacion.py: lote automático de recibos → facturas.
"""
