# facturacion/services/sri/signer.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

import pytz
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12
from django.conf import settings
from django.utils import timezone
from lxml import etree

logger = logging.getLogger("facturacion.sri")

DS_NS = "http://www.w3.org/2000/09/xmldsig#"

C14N_INCLUSIVO = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
C14N_EXCLUSIVO = "http://www.w3.org/2001/10/xml-exc-c14n#"
ALG_ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
ALG_SHA1 = "http://www.w3.org/2000/09/xmldsig#sha1"
ALG_RSA_SHA1 = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"


class CertificateError(Exception):
    """Errores relacionados con certificado/carga de PKCS12."""


class SigningError(Exception):
    """Errores al construir o validar la firma del XML."""


@dataclass
class CertificadoFirma:
    """
    Material extraído del .p12. Solo vive durante una operación de firma.
    """

    private_key: object
    certificado: x509.Certificate
    clave_privada_pem: bytes
    certificado_pem: bytes
    certificado_der_b64: str
    valido_desde: datetime
    valido_hasta: datetime

    @property
    def sujeto(self) -> str:
        return self.certificado.subject.rfc4514_string()

    @property
    def emisor(self) -> str:
        return self.certificado.issuer.rfc4514_string()


def _vigencia(cert: x509.Certificate) -> Tuple[datetime, datetime]:
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        utc = pytz.UTC
        return utc.localize(cert.not_valid_before), utc.localize(cert.not_valid_after)


def cargar_pkcs12(
    p12_bytes: bytes,
    clave: str,
    verificar_vigencia: bool = True,
) -> CertificadoFirma:
    """
    Abre el contenedor PKCS#12 y devuelve clave privada + certificado (PEM y DER).

    Lanza CertificateError si la clave es incorrecta, el archivo está dañado,
    falta la clave privada o el certificado, o el certificado no está vigente.
    """
    if not p12_bytes:
        raise CertificateError("No se ha configurado el certificado digital.")
    if not clave:
        raise CertificateError("No se ha configurado la contraseña del certificado.")

    try:
        private_key, cert, _additional = pkcs12.load_key_and_certificates(
            p12_bytes,
            clave.encode("utf-8"),
        )
    except (ValueError, TypeError) as exc:
        logger.warning("No se pudo abrir el PKCS12: %s", exc.__class__.__name__)
        raise CertificateError(
            "No se pudo abrir el certificado: contraseña incorrecta o archivo dañado."
        ) from exc

    if private_key is None:
        raise CertificateError("El archivo PKCS12 no contiene una clave privada.")
    if cert is None:
        raise CertificateError("El archivo PKCS12 no contiene un certificado.")

    valido_desde, valido_hasta = _vigencia(cert)
    if verificar_vigencia:
        now = timezone.now()
        if now < valido_desde or now > valido_hasta:
            logger.warning(
                "Certificado %s fuera de vigencia. Válido: %s hasta %s. Ahora: %s",
                cert.subject.rfc4514_string(),
                valido_desde,
                valido_hasta,
                now,
            )
            raise CertificateError(
                f"Certificado vencido. Válido desde {valido_desde} hasta {valido_hasta}"
            )

    der = cert.public_bytes(Encoding.DER)
    return CertificadoFirma(
        private_key=private_key,
        certificado=cert,
        clave_privada_pem=private_key.private_bytes(
            encoding=Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        certificado_pem=cert.public_bytes(Encoding.PEM),
        certificado_der_b64=base64.b64encode(der).decode("ascii"),
        valido_desde=valido_desde,
        valido_hasta=valido_hasta,
    )


def _algoritmo_c14n() -> str:
    modo = str(getattr(settings, "SRI_FIRMA_C14N", "inclusive")).lower()
    return C14N_EXCLUSIVO if modo.startswith("exclusiv") else C14N_INCLUSIVO


def _canonicalize(element: etree._Element, algoritmo: str) -> bytes:
    return etree.tostring(
        element,
        method="c14n",
        exclusive=(algoritmo == C14N_EXCLUSIVO),
        with_comments=False,
    )


def _normalizar_texto(xml: str) -> str:
    return xml.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")


def _ubicar_elemento(xml: str, etiqueta: str) -> Tuple[int, int]:
    """
    Devuelve (inicio, fin) del elemento a firmar dentro del texto.

    Busca primero `<etiqueta ... id="comprobante">` (comillas simples o dobles);
    si no existe, usa la primera aparición de la etiqueta.
    """
    tag = re.escape(etiqueta)
    marcado = re.search(
        rf"<{tag}\b[^>]*\bid\s*=\s*([\"'])comprobante\1",
        xml,
    )
    if marcado is not None:
        inicio = marcado.start()
    else:
        cualquiera = re.search(rf"<{tag}\b", xml)
        if cualquiera is None:
            raise SigningError(f"No se encontró el elemento <{etiqueta}> a firmar.")
        logger.warning(
            "No se encontró <%s id=\"comprobante\">; se firma la primera aparición de <%s>.",
            etiqueta,
            etiqueta,
        )
        inicio = cualquiera.start()

    cierre = f"</{etiqueta}>"
    pos_cierre = xml.rfind(cierre)
    if pos_cierre < inicio:
        raise SigningError(f"No se encontró el cierre {cierre} del elemento a firmar.")
    return inicio, pos_cierre + len(cierre)


def _validar_firma_embebida(xml_firmado: str) -> None:
    requeridos = ("Signature", "SignedInfo", "SignatureValue", "KeyInfo", "X509Certificate")
    faltantes = [
        nombre
        for nombre in requeridos
        if re.search(rf"<(?:\w+:)?{nombre}[\s>]", xml_firmado) is None
    ]
    if faltantes:
        raise SigningError(f"XML firmado incompleto, faltan: {', '.join(faltantes)}")
    if xml_firmado.startswith("\ufeff"):
        raise SigningError("El XML firmado contiene BOM.")
    if "\r" in xml_firmado:
        raise SigningError("El XML firmado contiene saltos de línea CR.")


def firmar_xml(
    xml: str,
    p12_bytes: bytes,
    clave: str,
    etiqueta: str = "factura",
    certificado: Optional[CertificadoFirma] = None,
) -> str:
    """
    Firma XML-DSig enveloped del elemento `<etiqueta id="comprobante">`.

    - CanonicalizationMethod: C14N inclusivo (o exclusivo con SRI_FIRMA_C14N)
    - Transforms: enveloped-signature + c14n
    - DigestMethod: SHA1, SignatureMethod: RSA-SHA1
    - KeyInfo/X509Data/X509Certificate: DER en base64 sin espacios

    El elemento firmado se reinserta en el texto original, que se conserva
    tal cual antes y después de él.
    """
    if not xml or not xml.strip():
        raise SigningError("El XML a firmar está vacío.")

    material = certificado or cargar_pkcs12(p12_bytes, clave)
    texto = _normalizar_texto(xml)
    inicio, fin = _ubicar_elemento(texto, etiqueta)

    try:
        elemento = etree.fromstring(texto[inicio:fin].encode("utf-8"))
    except etree.XMLSyntaxError as exc:
        raise SigningError(f"XML mal formado al intentar firmar: {exc}") from exc

    node_id = elemento.get("id")
    if node_id is None:
        node_id = "comprobante"
        elemento.set("id", node_id)

    algoritmo = _algoritmo_c14n()

    try:
        digest = hashlib.sha1(_canonicalize(elemento, algoritmo)).digest()

        signature = etree.Element(f"{{{DS_NS}}}Signature", nsmap={"ds": DS_NS})
        signed_info = etree.SubElement(signature, f"{{{DS_NS}}}SignedInfo")
        etree.SubElement(signed_info, f"{{{DS_NS}}}CanonicalizationMethod", Algorithm=algoritmo)
        etree.SubElement(signed_info, f"{{{DS_NS}}}SignatureMethod", Algorithm=ALG_RSA_SHA1)

        reference = etree.SubElement(signed_info, f"{{{DS_NS}}}Reference", URI=f"#{node_id}")
        transforms = etree.SubElement(reference, f"{{{DS_NS}}}Transforms")
        etree.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=ALG_ENVELOPED)
        etree.SubElement(transforms, f"{{{DS_NS}}}Transform", Algorithm=algoritmo)
        etree.SubElement(reference, f"{{{DS_NS}}}DigestMethod", Algorithm=ALG_SHA1)
        etree.SubElement(reference, f"{{{DS_NS}}}DigestValue").text = (
            base64.b64encode(digest).decode("ascii")
        )

        signature_value = etree.SubElement(signature, f"{{{DS_NS}}}SignatureValue")
        key_info = etree.SubElement(signature, f"{{{DS_NS}}}KeyInfo")
        x509_data = etree.SubElement(key_info, f"{{{DS_NS}}}X509Data")
        etree.SubElement(x509_data, f"{{{DS_NS}}}X509Certificate").text = (
            material.certificado_der_b64
        )

        # SignedInfo se canonicaliza ya dentro del documento
        elemento.append(signature)
        firma = material.private_key.sign(
            _canonicalize(signed_info, algoritmo),
            padding.PKCS1v15(),
            hashes.SHA1(),
        )
        signature_value.text = base64.b64encode(firma).decode("ascii")

        firmado = etree.tostring(elemento, encoding="unicode")
    except (SigningError, CertificateError):
        raise
    except Exception as exc:
        logger.exception("Error al firmar XML: %s", exc)
        raise SigningError(f"Error al firmar el XML: {exc}") from exc

    xml_firmado = texto[:inicio] + firmado + texto[fin:]
    _validar_firma_embebida(xml_firmado)

    logger.info(
        "XML firmado (RSA-SHA1, %s) con certificado %s",
        "exclusivo" if algoritmo == C14N_EXCLUSIVO else "inclusivo",
        material.sujeto,
    )
    return xml_firmado
