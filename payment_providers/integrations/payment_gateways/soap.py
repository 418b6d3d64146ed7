"""
Minimal SOAP 1.1 envelope handling for the gateways that only offer SOAP
web services (ePay, Wannafind, PayEx).
"""

import xml.etree.ElementTree as ET
from typing import Dict, Mapping, Optional

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"


def local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def build_envelope(
    namespace: str,
    operation: str,
    params: Mapping[str, Optional[object]],
    qualified_params: bool = True,
) -> bytes:
    """
    Build a SOAP 1.1 request envelope.

    Args:
        namespace: Target namespace of the service
        operation: Operation element name
        params: Operation parameters in wire order, None is sent as an empty element
        qualified_params: Put parameter elements in the target namespace (document/literal)
    """
    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    call = ET.SubElement(body, f"{{{namespace}}}{operation}")
    for name, value in params.items():
        tag = f"{{{namespace}}}{name}" if qualified_params else name
        child = ET.SubElement(call, tag)
        child.text = "" if value is None else str(value)
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def soap_headers(action: str) -> Dict[str, str]:
    return {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": f'"{action}"'}


def parse_response(body: str, operation: str) -> Dict[str, str]:
    """
    Flatten the ``<operation>Response`` element of a SOAP answer.

    Every leaf element below the response element becomes a ``local name ->
    text`` entry; the first occurrence of a name wins.

    Raises:
        ValueError: On a SOAP fault or when the response element is missing
        xml.etree.ElementTree.ParseError: If the body is not XML
    """
    root = ET.fromstring(body)
    response = None
    for element in root.iter():
        name = local_name(element.tag)
        if name == "Fault":
            fault = {local_name(child.tag): (child.text or "") for child in element}
            raise ValueError(f"SOAP fault: {fault.get('faultstring', '')}")
        if name == f"{operation}Response":
            response = element
            break

    if response is None:
        raise ValueError(f"SOAP response holds no {operation}Response element")

    values: Dict[str, str] = {}
    for element in response.iter():
        if element is not response and len(element) == 0:
            values.setdefault(local_name(element.tag), (element.text or "").strip())
    return values
