"""XMP packet parsing and sidecar generation.

Reading pulls ratings, colour labels and keywords out of the packet embedded
in an original (Lightroom/ACR ``crs:``, standard ``xmp:``, Dublin Core and
Photoshop urgency). Writing produces an RDF/XML sidecar from the image row.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from lightbox.models.image import Image, ImageLabel
from lightbox.services.imaging.exif import parse_exif_datetime

logger = logging.getLogger(__name__)

CREATOR_TOOL = "Lightbox Image Management System"

NS = {
    "x": "adobe:ns:meta/",
    "rdf": "http://www.w3.org/1999/02/22-rdf-syntax-ns#",
    "xmp": "http://ns.adobe.com/xap/1.0/",
    "dc": "http://purl.org/dc/elements/1.1/",
    "crs": "http://ns.adobe.com/camera-raw-settings/1.0/",
    "photoshop": "http://ns.adobe.com/photoshop/1.0/",
    "tiff": "http://ns.adobe.com/tiff/1.0/",
    "exif": "http://ns.adobe.com/exif/1.0/",
}
XML_LANG = "{http://www.w3.org/XML/1998/namespace}lang"

for _prefix, _uri in NS.items():
    ET.register_namespace(_prefix, _uri)

URGENCY_LABELS = {
    1: ImageLabel.RED,
    2: ImageLabel.ORANGE,
    3: ImageLabel.YELLOW,
    4: ImageLabel.GREEN,
    5: ImageLabel.BLUE,
    6: ImageLabel.PURPLE,
    7: ImageLabel.GREY,
}

# EXIF orientation names (as printed by exiftool/libvips) -> tiff:Orientation
ORIENTATION_NAMES = {
    "top-left": 1,
    "horizontal (normal)": 1,
    "top-right": 2,
    "mirror horizontal": 2,
    "bottom-right": 3,
    "rotate 180": 3,
    "bottom-left": 4,
    "mirror vertical": 4,
    "left-top": 5,
    "mirror horizontal and rotate 270 cw": 5,
    "right-top": 6,
    "rotate 90 cw": 6,
    "right-bottom": 7,
    "mirror horizontal and rotate 90 cw": 7,
    "left-bottom": 8,
    "rotate 270 cw": 8,
}

_PACKET_START = b"<x:xmpmeta"
_PACKET_END = b"</x:xmpmeta>"
_RDF_START = b"<rdf:RDF"
_RDF_END = b"</rdf:RDF>"


@dataclass
class XmpFields:
    crs_rating: Optional[int] = None
    crs_label: Optional[str] = None
    xmp_rating: Optional[int] = None
    xmp_label: Optional[str] = None
    urgency: Optional[int] = None
    subjects: List[str] = field(default_factory=list)

    def rating(self) -> Optional[int]:
        value = self.crs_rating if self.crs_rating is not None else self.xmp_rating
        if value is None or value <= 0:
            return None
        return min(value, 5)

    def label(self) -> Optional[ImageLabel]:
        raw = self.crs_label or self.xmp_label
        if not raw and self.urgency:
            return URGENCY_LABELS.get(self.urgency)
        return normalize_label(raw)


def normalize_label(raw: Optional[str]) -> Optional[ImageLabel]:
    if not raw:
        return None
    name = raw.strip().lower().capitalize()
    if name == "Gray":
        name = "Grey"
    try:
        label = ImageLabel(name)
    except ValueError:
        return None
    return None if label is ImageLabel.NONE else label


def find_packet(data: bytes) -> Optional[bytes]:
    """Locate the XMP packet embedded anywhere in a file's bytes."""
    start = data.find(_PACKET_START)
    if start >= 0:
        end = data.find(_PACKET_END, start)
        if end >= 0:
            return data[start : end + len(_PACKET_END)]
    start = data.find(_RDF_START)
    if start >= 0:
        end = data.find(_RDF_END, start)
        if end >= 0:
            return data[start : end + len(_RDF_END)]
    return None


def _int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value.strip()))
    except ValueError:
        return None


def _prop(descriptions: Iterable[ET.Element], prefix: str, name: str) -> Optional[str]:
    qname = f"{{{NS[prefix]}}}{name}"
    for desc in descriptions:
        if qname in desc.attrib:
            return desc.attrib[qname]
        child = desc.find(qname)
        if child is not None:
            # Alt/Seq containers carry the value in their first rdf:li
            li = child.find(f".//{{{NS['rdf']}}}li")
            text = li.text if li is not None else child.text
            if text and text.strip():
                return text.strip()
    return None


def _bag(descriptions: Iterable[ET.Element], prefix: str, name: str) -> List[str]:
    qname = f"{{{NS[prefix]}}}{name}"
    values: List[str] = []
    for desc in descriptions:
        child = desc.find(qname)
        if child is None:
            continue
        for li in child.iter(f"{{{NS['rdf']}}}li"):
            if li.text and li.text.strip() and li.text.strip() not in values:
                values.append(li.text.strip())
        if not values and child.text and child.text.strip():
            values.extend(v.strip() for v in child.text.split(",") if v.strip())
    return values


def parse_packet(packet: bytes) -> Optional[XmpFields]:
    try:
        root = ET.fromstring(packet)
    except ET.ParseError as exc:
        logger.debug("Unparseable XMP packet", extra={"error": str(exc)})
        return None

    descriptions = list(root.iter(f"{{{NS['rdf']}}}Description"))
    if not descriptions:
        return None
    return XmpFields(
        crs_rating=_int(_prop(descriptions, "crs", "Rating")),
        crs_label=_prop(descriptions, "crs", "Label"),
        xmp_rating=_int(_prop(descriptions, "xmp", "Rating")),
        xmp_label=_prop(descriptions, "xmp", "Label"),
        urgency=_int(_prop(descriptions, "photoshop", "Urgency")),
        subjects=_bag(descriptions, "dc", "subject"),
    )


def read_xmp(data: bytes) -> Optional[XmpFields]:
    packet = find_packet(data)
    if packet is None:
        return None
    return parse_packet(packet)


def xmp_orientation(value: str) -> int:
    text = value.strip()
    if text.isdigit():
        number = int(text)
        if 1 <= number <= 8:
            return number
    else:
        number = ORIENTATION_NAMES.get(text.lower())
        if number is not None:
            return number
    raise ValueError(f"unknown orientation: {value!r}")


def _xmp_date(value: Optional[str]) -> Optional[str]:
    parsed = parse_exif_datetime(value)
    return parsed.isoformat() if parsed else None


def build_sidecar(image: Image) -> bytes:
    """Render the RDF/XML sidecar for ``image``."""
    rdf = NS["rdf"]
    meta = ET.Element(f"{{{NS['x']}}}xmpmeta")
    root = ET.SubElement(meta, f"{{{rdf}}}RDF")
    desc = ET.SubElement(root, f"{{{rdf}}}Description", {f"{{{rdf}}}about": ""})

    def put(prefix: str, name: str, value: Optional[str]) -> None:
        if value:
            desc.set(f"{{{NS[prefix]}}}{name}", value)

    put("xmp", "CreatorTool", CREATOR_TOOL)

    exif = image.exif_record
    if exif is not None:
        created = _xmp_date(exif.date_time_original)
        put("xmp", "CreateDate", created)
        put("exif", "DateTimeOriginal", created)
        put("xmp", "ModifyDate", _xmp_date(exif.modify_date))
        put("tiff", "Make", exif.make)
        put("tiff", "Model", exif.model)
        put("tiff", "Software", exif.software)
        if exif.orientation:
            try:
                put("tiff", "Orientation", str(xmp_orientation(exif.orientation)))
            except ValueError as exc:
                logger.error("Failed to convert orientation", extra={"uid": image.uid, "error": str(exc)})

    metadata = image.metadata_record
    if metadata is not None:
        if metadata.label is not None:
            put("xmp", "Label", metadata.label.value)
        if metadata.rating is not None:
            put("xmp", "Rating", str(metadata.rating))
        if metadata.keywords:
            subject = ET.SubElement(desc, f"{{{NS['dc']}}}subject")
            bag = ET.SubElement(subject, f"{{{rdf}}}Bag")
            for keyword in metadata.keywords:
                ET.SubElement(bag, f"{{{rdf}}}li").text = keyword

    if image.description:
        description = ET.SubElement(desc, f"{{{NS['dc']}}}description")
        alt = ET.SubElement(description, f"{{{rdf}}}Alt")
        li = ET.SubElement(alt, f"{{{rdf}}}li", {XML_LANG: "x-default"})
        li.text = image.description

    ET.indent(meta, space="  ")
    body = ET.tostring(meta, encoding="unicode")
    packet = (
        '<?xpacket begin="\ufeff" id="W5M0MpCehiHzreSzNTczkc9d"?>\n'
        f"{body}\n"
        '<?xpacket end="w"?>\n'
    )
    return packet.encode("utf-8")
