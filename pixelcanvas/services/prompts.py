"""
Prompt building for cell artwork and background insertion.

Style templates turn a user's short description into a full prompt for the
cell artwork; the insertion prompt tells the inpainting model what to paint
into the masked cell of the shared background.
"""

from __future__ import annotations

from typing import Callable, Dict

from pixelcanvas.services.stitching import GRID_SIZE


ART_STYLES = (
    "pixelArt",
    "chibi",
    "kawaiiPastel",
    "softBlob",
    "sanrio",
    "vinylToy",
    "storybook",
    "flatDesign",
    "y2kBubble",
    "crochetAmigurumi",
)

ART_STYLE_LABELS: Dict[str, str] = {
    "pixelArt": "Pixel Art",
    "chibi": "Chibi",
    "kawaiiPastel": "Kawaii Pastel",
    "softBlob": "Soft Blob",
    "sanrio": "Sanrio-Inspired",
    "vinylToy": "Vinyl Toy",
    "storybook": "Storybook",
    "flatDesign": "Flat Design",
    "y2kBubble": "Y2K Bubble",
    "crochetAmigurumi": "Crochet / Amigurumi",
}

_STYLE_TEMPLATES: Dict[str, Callable[[str], str]] = {
    "pixelArt": lambda p: f"A pixel art version of {p}, in retro 16-bit style, super cute and blocky.",
    "chibi": lambda p: f"A chibi version of {p}, with a big head, tiny body, and cute anime style.",
    "kawaiiPastel": lambda p: (
        f"A cute pastel illustration of {p}, with soft colors, sparkles, and kawaii features."
    ),
    "softBlob": lambda p: f"A soft, blobby, round version of {p}, with simple eyes and a squishy look.",
    "sanrio": lambda p: (
        f"A Sanrio-inspired cute version of {p}, like Hello Kitty or Cinnamoroll, clean and iconic."
    ),
    "vinylToy": lambda p: (
        f"A collectible vinyl toy version of {p}, with stylized proportions and clean lines."
    ),
    "storybook": lambda p: (
        f"A children's storybook illustration of {p}, with watercolor textures and whimsy."
    ),
    "flatDesign": lambda p: f"A minimal, flat design version of {p}, with bold shapes and bright colors.",
    "y2kBubble": lambda p: (
        f"A bubbly, glossy Y2K-style version of {p}, with shiny effects and playful energy."
    ),
    "crochetAmigurumi": lambda p: (
        f"An amigurumi crochet version of {p}, made of yarn and very soft and cute."
    ),
}

_POSITION_NAMES = (
    ("top-left", "top-center", "top-right"),
    ("middle-left", "center", "middle-right"),
    ("bottom-left", "bottom-center", "bottom-right"),
)


def generate_styled_prompt(style: str, user_prompt: str) -> str:
    """Wrap a user prompt in the template of one of the supported art styles."""
    template = _STYLE_TEMPLATES.get(style)
    if template is None:
        raise ValueError(f"Unknown art style {style!r}. Expected one of: {', '.join(ART_STYLES)}")
    return template(user_prompt.strip())


def describe_cell_position(cell_x: int, cell_y: int) -> str:
    """Coarse location of a cell on the canvas, e.g. 'top-left' or 'center'."""
    third = GRID_SIZE / 3
    column = min(int(cell_x // third), 2)
    row = min(int(cell_y // third), 2)
    return _POSITION_NAMES[row][column]


def generate_background_insertion_prompt(ai_prompt: str, cell_x: int, cell_y: int) -> str:
    """
    Prompt for inpainting a purchased cell's subject into the background.

    The model sees the extraction window with the cell masked out, so the
    prompt asks for a single subject filling the hole and matching the
    lighting, palette and perspective of what surrounds it.
    """
    subject = ai_prompt.strip()
    if not subject:
        raise ValueError("AI prompt must not be empty")
    position = describe_cell_position(cell_x, cell_y)
    return (
        f"Paint {subject} into the transparent area of this scene, in the {position} "
        f"of a {GRID_SIZE}x{GRID_SIZE} grid landscape (cell {cell_x}, {cell_y}). "
        "Keep it to a single element that fills the masked cell, and match the "
        "surrounding art style, color palette, lighting and perspective so the "
        "edges blend seamlessly into the existing background."
    )
