"""ThumbHash encoder (https://evanw.github.io/thumbhash/).

Produces the compact placeholder hash stored base64-encoded in image
metadata. Inputs must be at most 100x100; callers pass the 32x32 source.
"""

from __future__ import annotations

import base64
import math
from typing import List, Sequence, Tuple

from PIL import Image as PILImage

MAX_SIDE = 100


def _round(value: float) -> int:
    # JavaScript Math.round semantics
    return math.floor(value + 0.5)


def _encode_channel(channel: Sequence[float], w: int, h: int, nx: int, ny: int) -> Tuple[float, List[float], float]:
    dc = 0.0
    ac: List[float] = []
    scale = 0.0
    for cy in range(ny):
        cx = 0
        while cx * ny < nx * (ny - cy):
            fx = [math.cos(math.pi / w * cx * (x + 0.5)) for x in range(w)]
            f = 0.0
            for y in range(h):
                fy = math.cos(math.pi / h * cy * (y + 0.5))
                row = y * w
                for x in range(w):
                    f += channel[x + row] * fx[x] * fy
            f /= w * h
            if cx or cy:
                ac.append(f)
                scale = max(scale, abs(f))
            else:
                dc = f
            cx += 1
    if scale:
        ac = [0.5 + 0.5 / scale * value for value in ac]
    return dc, ac, scale


def rgba_to_thumbhash(w: int, h: int, rgba: bytes) -> bytes:
    if w > MAX_SIDE or h > MAX_SIDE:
        raise ValueError(f"{w}x{h} doesn't fit in {MAX_SIDE}x{MAX_SIDE}")
    if len(rgba) != w * h * 4:
        raise ValueError("rgba buffer does not match dimensions")

    avg_r = avg_g = avg_b = avg_a = 0.0
    for i in range(w * h):
        j = i * 4
        alpha = rgba[j + 3] / 255
        avg_r += alpha / 255 * rgba[j]
        avg_g += alpha / 255 * rgba[j + 1]
        avg_b += alpha / 255 * rgba[j + 2]
        avg_a += alpha
    if avg_a:
        avg_r /= avg_a
        avg_g /= avg_a
        avg_b /= avg_a

    has_alpha = avg_a < w * h
    l_limit = 5 if has_alpha else 7
    lx = max(1, _round(l_limit * w / max(w, h)))
    ly = max(1, _round(l_limit * h / max(w, h)))

    l_chan: List[float] = []
    p_chan: List[float] = []
    q_chan: List[float] = []
    a_chan: List[float] = []
    for i in range(w * h):
        j = i * 4
        alpha = rgba[j + 3] / 255
        r = avg_r * (1 - alpha) + alpha / 255 * rgba[j]
        g = avg_g * (1 - alpha) + alpha / 255 * rgba[j + 1]
        b = avg_b * (1 - alpha) + alpha / 255 * rgba[j + 2]
        l_chan.append((r + g + b) / 3)
        p_chan.append((r + g) / 2 - b)
        q_chan.append(r - g)
        a_chan.append(alpha)

    l_dc, l_ac, l_scale = _encode_channel(l_chan, w, h, max(3, lx), max(3, ly))
    p_dc, p_ac, p_scale = _encode_channel(p_chan, w, h, 3, 3)
    q_dc, q_ac, q_scale = _encode_channel(q_chan, w, h, 3, 3)
    if has_alpha:
        a_dc, a_ac, a_scale = _encode_channel(a_chan, w, h, 5, 5)

    is_landscape = w > h
    header24 = (
        _round(63 * l_dc)
        | (_round(31.5 + 31.5 * p_dc) << 6)
        | (_round(31.5 + 31.5 * q_dc) << 12)
        | (_round(31 * l_scale) << 18)
        | (int(has_alpha) << 23)
    )
    header16 = (
        (ly if is_landscape else lx)
        | (_round(63 * p_scale) << 3)
        | (_round(63 * q_scale) << 9)
        | (int(is_landscape) << 15)
    )
    out = [header24 & 255, (header24 >> 8) & 255, header24 >> 16, header16 & 255, header16 >> 8]
    if has_alpha:
        out.append(_round(15 * a_dc) | (_round(15 * a_scale) << 4))

    channels = [l_ac, p_ac, q_ac] + ([a_ac] if has_alpha else [])
    ac_start = len(out)
    ac_index = 0
    for ac in channels:
        for f in ac:
            pos = ac_start + (ac_index >> 1)
            while len(out) <= pos:
                out.append(0)
            out[pos] |= _round(15 * f) << ((ac_index & 1) << 2)
            ac_index += 1
    return bytes(out)


def image_to_thumbhash(img: PILImage.Image) -> bytes:
    rgba = img.convert("RGBA")
    if rgba.width > MAX_SIDE or rgba.height > MAX_SIDE:
        rgba.thumbnail((MAX_SIDE, MAX_SIDE))
    return rgba_to_thumbhash(rgba.width, rgba.height, rgba.tobytes())


def encode_thumbhash(hash_bytes: bytes) -> str:
    """URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(hash_bytes).rstrip(b"=").decode("ascii")
