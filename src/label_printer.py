"""
Packet label rendering.

Renders a printable Code-128 label for each SKU of an invoice. The barcode
carries the structured packet payload ("PKT1:" + base64url JSON), so a scan
of the label always decodes to exactly that SKU, and the SKU is printed in
plain text below the bars.

Label geometry targets common 203 DPI thermal printers and 65 x 35 mm labels.
"""

import io
from pathlib import Path
from typing import List

import barcode
from barcode.writer import ImageWriter
from PIL import Image, ImageDraw, ImageFont

from config import DEFAULT_LABEL_DPI
from logger import get_logger
from models import InvoiceManifest, ItemIdentifier
from payload_codec import encode_item

logger = get_logger(__name__)

LABEL_WIDTH_MM = 65
LABEL_HEIGHT_MM = 35

# Space below the bars for one line of SKU text
TEXT_AREA_HEIGHT = 50
FONT_SIZE_PT = 28


def mm_to_px(mm: float, dpi: int) -> int:
    return int((mm / 25.4) * dpi)


def safe_filename(sku: str) -> str:
    """SKU reduced to filename-safe characters."""
    cleaned = "".join(c for c in sku if c.isalnum() or c in '-_').rstrip()
    return cleaned or "unnamed_sku"


def _load_font():
    try:
        return ImageFont.truetype("arial.ttf", FONT_SIZE_PT)
    except IOError:
        logger.warning("Arial font not found, falling back to default font")
        return ImageFont.load_default()


def render_item_label(sku: str, output_dir: Path, dpi: int = DEFAULT_LABEL_DPI) -> Path:
    """
    Render one packet label and save it as PNG.

    Args:
        sku: SKU to encode
        output_dir: Directory for the PNG (created if missing)
        dpi: Printer resolution

    Returns:
        Path of the saved label

    Raises:
        RuntimeError: If the barcode cannot be generated
    """
    label_w = mm_to_px(LABEL_WIDTH_MM, dpi)
    label_h = mm_to_px(LABEL_HEIGHT_MM, dpi)
    bars_h = label_h - TEXT_AREA_HEIGHT

    payload = encode_item(ItemIdentifier(sku=sku))

    try:
        code128 = barcode.get_barcode_class('code128')
        barcode_obj = code128(payload, writer=ImageWriter())

        buffer = io.BytesIO()
        barcode_obj.write(buffer, {
            'module_height': 15.0,
            'write_text': False,
            'quiet_zone': 2
        })
        buffer.seek(0)
        barcode_img = Image.open(buffer)
    except Exception as e:
        logger.error(f"Barcode generation failed for SKU {sku}: {e}", exc_info=True)
        raise RuntimeError(f"Error during barcode generation: {e}") from e

    # Keep proportions, never wider than the label
    aspect_ratio = barcode_img.width / barcode_img.height
    new_w = min(int(bars_h * aspect_ratio), label_w)
    barcode_img = barcode_img.resize((new_w, bars_h), Image.LANCZOS)

    label_img = Image.new('RGB', (label_w, label_h), 'white')
    label_img.paste(barcode_img, ((label_w - new_w) // 2, 0))

    draw = ImageDraw.Draw(label_img)
    font = _load_font()
    text_bbox = draw.textbbox((0, 0), sku, font=font)
    text_x = (label_w - (text_bbox[2] - text_bbox[0])) / 2
    draw.text((text_x, bars_h + 5), sku, font=font, fill='black')

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    label_path = output_dir / f"{safe_filename(sku)}.png"
    label_img.save(label_path)

    logger.debug(f"Label for SKU {sku} saved to {label_path}")
    return label_path


def render_manifest_labels(manifest: InvoiceManifest, output_dir: Path,
                           dpi: int = DEFAULT_LABEL_DPI) -> List[Path]:
    """Render one label per manifest line, in invoice order."""
    paths = [render_item_label(line.sku, output_dir, dpi) for line in manifest.lines]
    logger.info(f"Rendered {len(paths)} labels for order {manifest.order_id}")
    return paths
