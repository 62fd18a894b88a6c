"""
Open Graph helpers: SEO slugs, share metadata and the BEFORE/AFTER card
"""

import io
import re
import time
from typing import Optional, Sequence
from urllib.parse import urlencode

from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from roastme.core.config import settings
from roastme.models.dto import FeatureAnalysis, OGMetadata, RoastContent

SITE_NAME = "Roast Me Characters"

OG_WIDTH = 1200
OG_HEIGHT = 630
PANEL_SIZE = 300

# characters.seo_slug is String(160)
SEO_SLUG_MAX_LENGTH = 160

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _slug_part(text: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", text.lower())


def create_seo_slug(
    feature_names: Sequence[str], style: str, now_ms: Optional[int] = None
) -> str:
    """
    {style}-roast-{feature1}-{feature2}-{base36 timestamp}

    Every non-alphanumeric becomes "-" and runs of "-" collapse. The part
    before the timestamp is cut so the slug never exceeds SEO_SLUG_MAX_LENGTH.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = to_base36(now_ms)
    features = "-".join(_slug_part(name) for name in list(feature_names)[:2])
    prefix = re.sub(r"-{2,}", "-", f"{_slug_part(style)}-roast-{features}").strip("-")
    prefix = prefix[: SEO_SLUG_MAX_LENGTH - len(suffix) - 1].rstrip("-")
    return f"{prefix}-{suffix}"


def generate_og_metadata(
    analysis: FeatureAnalysis, roast: Optional[RoastContent] = None
) -> OGMetadata:
    style = analysis.character_style
    feature_names = ", ".join(f.feature_name for f in analysis.features)
    personality = ", ".join(analysis.personality_traits[:3])

    title = f"Hilarious {style} Roast Figurine | {SITE_NAME}"
    description = (
        f"Get roasted! This comedic {style} caricature figurine hilariously "
        f"exaggerates {feature_names}. Personality: {personality}. "
        "Premium 1/7 scale roasting collectible!"
    )
    if roast:
        title = f"{roast.title} | {SITE_NAME}"
        description = f"{roast.roast_text} {roast.punchline}"

    return OGMetadata(
        title=title[:200],
        description=description[:500],
        image_alt=(
            f"1/7 scale {style} roast caricature figurine with comically "
            f"exaggerated features including {feature_names}"
        )[:300],
    )


def build_composite_og_url(
    original_url: str,
    generated_url: str,
    style: str,
    feature_names: Sequence[str],
    punchline: Optional[str] = None,
    base_url: Optional[str] = None,
) -> str:
    params = {
        "original": original_url,
        "generated": generated_url,
        "title": f"{style.upper()} ROAST",
        "features": ",".join(list(feature_names)[:2]),
    }
    if punchline:
        params["punchline"] = punchline
    return f"{(base_url or settings.api_url).rstrip('/')}/v1/og?{urlencode(params)}"


# ==================== Composite rendering ====================


def _font(size: int) -> ImageFont.ImageFont:
    for name in ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf"):
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def _vertical_gradient(top: tuple, bottom: tuple) -> Image.Image:
    gradient = Image.new("RGB", (1, OG_HEIGHT))
    for y in range(OG_HEIGHT):
        ratio = y / (OG_HEIGHT - 1)
        gradient.putpixel(
            (0, y), tuple(int(top[i] + (bottom[i] - top[i]) * ratio) for i in range(3))
        )
    return gradient.resize((OG_WIDTH, OG_HEIGHT))


def _panel(data: Optional[bytes]) -> Image.Image:
    """Square panel with rounded corners; grey placeholder for missing images"""
    panel = Image.new("RGB", (PANEL_SIZE, PANEL_SIZE), (229, 231, 235))
    if data:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img = ImageOps.exif_transpose(img).convert("RGB")
                panel = ImageOps.fit(
                    img, (PANEL_SIZE, PANEL_SIZE), method=Image.Resampling.LANCZOS
                )
        except (UnidentifiedImageError, OSError):
            pass
    mask = Image.new("L", (PANEL_SIZE, PANEL_SIZE), 0)
    ImageDraw.Draw(mask).rounded_rectangle(
        (0, 0, PANEL_SIZE - 1, PANEL_SIZE - 1), radius=20, fill=255
    )
    rounded = Image.new("RGBA", (PANEL_SIZE, PANEL_SIZE), (0, 0, 0, 0))
    rounded.paste(panel, (0, 0), mask)
    return rounded


def _centered_text(draw: ImageDraw.ImageDraw, center_x: int, y: int, text: str, font, fill):
    left, _, right, _ = draw.textbbox((0, 0), text, font=font)
    draw.text((center_x - (right - left) // 2, y), text, font=font, fill=fill)


def render_composite(
    original: Optional[bytes],
    generated: Optional[bytes],
    title: str = "AI Character",
    features: Sequence[str] = (),
    punchline: Optional[str] = None,
) -> bytes:
    """Render the 1200x630 BEFORE/AFTER share card as PNG"""
    canvas = _vertical_gradient((248, 250, 252), (226, 232, 240)).convert("RGBA")
    draw = ImageDraw.Draw(canvas)

    _centered_text(draw, OG_WIDTH // 2, 36, title[:40], _font(48), (31, 41, 55))

    label_font = _font(24)
    gap = 80
    arrow_width = 60
    left_x = (OG_WIDTH - (2 * PANEL_SIZE + 2 * gap + arrow_width)) // 2
    right_x = left_x + PANEL_SIZE + 2 * gap + arrow_width
    label_y = 130
    panel_y = label_y + 44

    for x, label, data, colour in (
        (left_x, "BEFORE", original, (55, 65, 81)),
        (right_x, "AFTER", generated, (220, 38, 38)),
    ):
        _centered_text(draw, x + PANEL_SIZE // 2, label_y, label, label_font, colour)
        draw.rounded_rectangle(
            (x - 4, panel_y - 4, x + PANEL_SIZE + 3, panel_y + PANEL_SIZE + 3),
            radius=22,
            fill=(229, 231, 235),
        )
        panel = _panel(data)
        canvas.paste(panel, (x, panel_y), panel)

    # arrow between panels
    arrow_x = left_x + PANEL_SIZE + gap
    arrow_y = panel_y + PANEL_SIZE // 2
    draw.rectangle((arrow_x, arrow_y - 6, arrow_x + arrow_width - 20, arrow_y + 6), fill=(239, 68, 68))
    draw.polygon(
        [
            (arrow_x + arrow_width - 24, arrow_y - 20),
            (arrow_x + arrow_width, arrow_y),
            (arrow_x + arrow_width - 24, arrow_y + 20),
        ],
        fill=(239, 68, 68),
    )

    chip_font = _font(20)
    chips = [f.strip() for f in features if f.strip()][:4]
    if chips:
        widths = [draw.textbbox((0, 0), chip, font=chip_font)[2] + 32 for chip in chips]
        x = (OG_WIDTH - (sum(widths) + 12 * (len(chips) - 1))) // 2
        y = panel_y + PANEL_SIZE + 24
        for chip, width in zip(chips, widths):
            draw.rounded_rectangle((x, y, x + width, y + 36), radius=18, fill=(254, 226, 226))
            draw.text((x + 16, y + 6), chip, font=chip_font, fill=(153, 27, 27))
            x += width + 12

    if punchline:
        _centered_text(
            draw, OG_WIDTH // 2, OG_HEIGHT - 50, f'"{punchline[:90]}"', _font(22), (75, 85, 99)
        )

    buffer = io.BytesIO()
    canvas.convert("RGB").save(buffer, format="PNG", optimize=True)
    return buffer.getvalue()
