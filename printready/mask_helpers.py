"""Alpha mask helpers for the compositor."""
from PIL import Image, ImageDraw, ImageOps


def rounded_rect_mask(size: tuple[int, int], radius: int) -> Image.Image:
    """Opaque rounded rectangle covering the whole of ``size``."""
    mask = Image.new("L", size, 0)
    mask_draw = ImageDraw.Draw(mask)

    # radius can't exceed half the shorter side
    radius = max(0, min(radius, min(size) // 2))
    mask_draw.rounded_rectangle(
        [(0, 0), (size[0] - 1, size[1] - 1)],
        radius=radius,
        fill=255
    )
    return mask


def apply_rounded_mask(image: Image.Image, radius: int) -> Image.Image:
    """Return an RGBA copy of ``image`` with its corners cut to ``radius``."""
    masked = image.convert("RGBA")
    alpha = rounded_rect_mask(masked.size, radius)
    if image.mode == "RGBA":
        alpha = Image.composite(image.getchannel("A"), Image.new("L", masked.size, 0), alpha)
    masked.putalpha(alpha)
    return masked


def fit_into_box(
    image: Image.Image,
    size: tuple[int, int],
    fit_mode: str = "cover"
) -> Image.Image:
    """Fit ``image`` into ``size``.

    ``cover`` fills the box and crops the overflow, ``contain`` keeps the
    whole image and leaves the rest of the box transparent.
    """
    if fit_mode == "contain":
        source = ImageOps.contain(image.convert("RGBA"), size, Image.LANCZOS)
        layer = Image.new("RGBA", size, (0, 0, 0, 0))
        margin_x = (size[0] - source.width) // 2
        margin_y = (size[1] - source.height) // 2
        layer.paste(source, (margin_x, margin_y))
        return layer

    return ImageOps.fit(image.convert("RGBA"), size, Image.LANCZOS)
