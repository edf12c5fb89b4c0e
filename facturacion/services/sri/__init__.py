# facturacion/services/sri/__init__.py
"""
Servicios relacionados con SRI:

- clave_acceso: clave de acceso de 49 dígitos (módulo 11).
- xml_factura_builder: construcción del XML de factura (versión 1.1.0).
- signer: firma XML-DSig con certificado PKCS#12.
- client: cliente SOAP para Recepción/Autorización.
- workflow: orquestación firma → envío → autorización.
"""
