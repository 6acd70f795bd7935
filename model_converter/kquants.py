"""
Numpy encoders for the k-quant block formats (Q4_K, Q3_K, Q2_K).

gguf ships decoders for these formats but no encoders. Each function here
takes float32 data whose innermost dimension is a multiple of 256 and
returns uint8 blocks in the exact on-disk layout gguf.quants.dequantize
reads back.

Super-block layouts (256 values each):
    Q4_K  144 bytes: d f16 | dmin f16 | scales[12] | qs[128]
    Q3_K  110 bytes: hmask[32] | qs[64] | scales[12] | d f16
    Q2_K   84 bytes: scales[16] | qs[64] | d f16 | dmin f16
"""

from typing import Callable, Dict

import numpy as np
from gguf.constants import GGML_QUANT_SIZES, GGMLQuantizationType

QK_K = 256


def _safe_div(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    """numerator / denominator, with 0 wherever the denominator is 0."""
    numerator, denominator = np.broadcast_arrays(
        np.asarray(numerator, dtype=np.float32),
        np.asarray(denominator, dtype=np.float32),
    )
    out = np.zeros(numerator.shape, dtype=np.float32)
    np.divide(numerator, denominator, out=out, where=denominator != 0)
    return out


def _to_blocks(data: np.ndarray) -> np.ndarray:
    data = np.asarray(data, dtype=np.float32)
    if data.ndim == 0 or data.shape[-1] % QK_K != 0:
        raise ValueError(f"Innermost dimension must be a multiple of {QK_K}, got shape {data.shape}")
    return data.reshape(-1, QK_K)


def _f16_bytes(values: np.ndarray) -> np.ndarray:
    """(n,) float values as (n, 2) little-endian f16 bytes."""
    return np.ascontiguousarray(values.astype('<f2').reshape(-1, 1)).view(np.uint8)


def _from_blocks(blocks: np.ndarray, shape: tuple, qtype: GGMLQuantizationType) -> np.ndarray:
    block_size, type_size = GGML_QUANT_SIZES[qtype]
    byte_shape = (*shape[:-1], shape[-1] // block_size * type_size)
    return np.ascontiguousarray(blocks).reshape(byte_shape)


def _pack_2bit(q: np.ndarray) -> np.ndarray:
    """
    Pack (n, 256) values in 0..3 into (n, 64) bytes.

    Value e lives in byte (e // 128) * 32 + e % 32 at bit 2 * ((e % 128) // 32).
    """
    q = q.astype(np.uint8).reshape(-1, 2, 4, 32)
    packed = q[:, :, 0] | (q[:, :, 1] << 2) | (q[:, :, 2] << 4) | (q[:, :, 3] << 6)
    return packed.reshape(-1, 64)


def quantize_q4_k(data: np.ndarray) -> np.ndarray:
    """
    Encode float32 data as Q4_K.

    Eight sub-blocks of 32 values each get a 6-bit scale and 6-bit min;
    values are stored as 4-bit offsets from the min.
    """
    shape = np.shape(data)
    blocks = _to_blocks(data)
    n = blocks.shape[0]
    sub = blocks.reshape(n, 8, 32)

    mins = -np.minimum(sub.min(axis=-1), 0)
    scales = (sub.max(axis=-1) + mins) / 15

    d = (scales.max(axis=-1) / 63).astype(np.float16)
    dmin = (mins.max(axis=-1) / 63).astype(np.float16)

    sc = np.clip(np.rint(_safe_div(scales, d.astype(np.float32)[:, None])), 0, 63).astype(np.uint8)
    m = np.clip(np.rint(_safe_div(mins, dmin.astype(np.float32)[:, None])), 0, 63).astype(np.uint8)

    eff_scale = d.astype(np.float32)[:, None] * sc
    eff_min = dmin.astype(np.float32)[:, None] * m
    q = np.clip(np.rint(_safe_div(sub + eff_min[..., None], eff_scale[..., None])), 0, 15).astype(np.uint8)

    # 6-bit scales/mins: low 6 bits of sub-blocks 0-3 in bytes 0-7, sub-blocks
    # 4-7 split into a nibble in bytes 8-11 and 2 bits on top of bytes 0-7
    packed_scales = np.concatenate([
        sc[:, :4] | ((sc[:, 4:] >> 4) << 6),
        m[:, :4] | ((m[:, 4:] >> 4) << 6),
        (sc[:, 4:] & 0x0F) | ((m[:, 4:] & 0x0F) << 4),
    ], axis=-1).astype(np.uint8)

    q = q.reshape(n, 4, 2, 32)
    qs = (q[:, :, 0] | (q[:, :, 1] << 4)).reshape(n, 128)

    out = np.concatenate([_f16_bytes(d), _f16_bytes(dmin), packed_scales, qs], axis=-1)
    return _from_blocks(out, shape, GGMLQuantizationType.Q4_K)


def quantize_q3_k(data: np.ndarray) -> np.ndarray:
    """
    Encode float32 data as Q3_K.

    Sixteen sub-blocks of 16 values share one f16 super-scale and a signed
    6-bit scale each; values are symmetric 3-bit integers in [-4, 3].
    """
    shape = np.shape(data)
    blocks = _to_blocks(data)
    n = blocks.shape[0]
    sub = blocks.reshape(n, 16, 16)

    # Largest-magnitude value of each sub-block maps to -4
    peak_index = np.abs(sub).argmax(axis=-1)[..., None]
    peaks = np.take_along_axis(sub, peak_index, axis=-1)[..., 0]
    scales = peaks / -4

    scale_index = np.abs(scales).argmax(axis=-1)[:, None]
    max_scale = np.take_along_axis(scales, scale_index, axis=-1)[:, 0]
    iscale = _safe_div(np.full_like(max_scale, -32), max_scale)

    ls = np.clip(np.rint(iscale[:, None] * scales), -32, 31)
    d = _safe_div(np.ones_like(iscale), iscale).astype(np.float16)

    eff_scale = d.astype(np.float32)[:, None] * ls
    q = np.clip(np.rint(_safe_div(sub, eff_scale[..., None])), -4, 3).astype(np.int8)

    stored = (ls + 32).astype(np.uint8)
    low = stored & 0x0F
    high = (stored >> 4).reshape(n, 4, 4)
    packed_scales = np.concatenate([
        low[:, :8] | (low[:, 8:] << 4),
        high[:, 0] | (high[:, 1] << 2) | (high[:, 2] << 4) | (high[:, 3] << 6),
    ], axis=-1).astype(np.uint8)

    q3 = (q + 4).astype(np.uint8).reshape(n, QK_K)
    qs = _pack_2bit(q3 & 0x03)

    hbits = (q3 >> 2).reshape(n, 8, 32)
    hmask = np.zeros((n, 32), dtype=np.uint8)
    for bit in range(8):
        hmask |= hbits[:, bit] << bit

    out = np.concatenate([hmask, qs, packed_scales, _f16_bytes(d)], axis=-1)
    return _from_blocks(out, shape, GGMLQuantizationType.Q3_K)


def quantize_q2_k(data: np.ndarray) -> np.ndarray:
    """
    Encode float32 data as Q2_K.

    Sixteen sub-blocks of 16 values each get a 4-bit scale and 4-bit min;
    values are stored as 2-bit offsets from the min.
    """
    shape = np.shape(data)
    blocks = _to_blocks(data)
    n = blocks.shape[0]
    sub = blocks.reshape(n, 16, 16)

    mins = -np.minimum(sub.min(axis=-1), 0)
    scales = (sub.max(axis=-1) + mins) / 3

    d = (scales.max(axis=-1) / 15).astype(np.float16)
    dmin = (mins.max(axis=-1) / 15).astype(np.float16)

    sc = np.clip(np.rint(_safe_div(scales, d.astype(np.float32)[:, None])), 0, 15).astype(np.uint8)
    m = np.clip(np.rint(_safe_div(mins, dmin.astype(np.float32)[:, None])), 0, 15).astype(np.uint8)

    eff_scale = d.astype(np.float32)[:, None] * sc
    eff_min = dmin.astype(np.float32)[:, None] * m
    q = np.clip(np.rint(_safe_div(sub + eff_min[..., None], eff_scale[..., None])), 0, 3).astype(np.uint8)

    packed_scales = (sc | (m << 4)).astype(np.uint8)
    qs = _pack_2bit(q.reshape(n, QK_K))

    out = np.concatenate([packed_scales, qs, _f16_bytes(d), _f16_bytes(dmin)], axis=-1)
    return _from_blocks(out, shape, GGMLQuantizationType.Q2_K)


KQUANT_ENCODERS: Dict[GGMLQuantizationType, Callable[[np.ndarray], np.ndarray]] = {
    GGMLQuantizationType.Q4_K: quantize_q4_k,
    GGMLQuantizationType.Q3_K: quantize_q3_k,
    GGMLQuantizationType.Q2_K: quantize_q2_k,
}
