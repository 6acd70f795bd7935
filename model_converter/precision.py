"""
Precision tokens and element types.

Maps the human-readable precision tokens accepted on the command line
("fp16", "q4_0", ...) to canonical GGML element types, and knows how
source dtypes (safetensors / torch / container) are stored once read.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from gguf.constants import GGML_QUANT_SIZES, GGMLQuantizationType, LlamaFileType


@dataclass(frozen=True)
class PrecisionToken:
    """One accepted --outtype value and what it means on disk."""
    token: str
    qtype: GGMLQuantizationType
    file_type: LlamaFileType


# Order matters only for help text
PRECISION_TOKENS: Dict[str, PrecisionToken] = {
    entry.token: entry for entry in (
        PrecisionToken('fp32', GGMLQuantizationType.F32, LlamaFileType.ALL_F32),
        PrecisionToken('fp16', GGMLQuantizationType.F16, LlamaFileType.MOSTLY_F16),
        PrecisionToken('q8_0', GGMLQuantizationType.Q8_0, LlamaFileType.MOSTLY_Q8_0),
        PrecisionToken('q5_1', GGMLQuantizationType.Q5_1, LlamaFileType.MOSTLY_Q5_1),
        PrecisionToken('q5_0', GGMLQuantizationType.Q5_0, LlamaFileType.MOSTLY_Q5_0),
        PrecisionToken('q4_1', GGMLQuantizationType.Q4_1, LlamaFileType.MOSTLY_Q4_1),
        PrecisionToken('q4_0', GGMLQuantizationType.Q4_0, LlamaFileType.MOSTLY_Q4_0),
        PrecisionToken('q4_k', GGMLQuantizationType.Q4_K, LlamaFileType.MOSTLY_Q4_K_M),
        PrecisionToken('q3_k', GGMLQuantizationType.Q3_K, LlamaFileType.MOSTLY_Q3_K_M),
        PrecisionToken('q2_k', GGMLQuantizationType.Q2_K, LlamaFileType.MOSTLY_Q2_K),
    )
}

_TOKENS_BY_TYPE: Dict[GGMLQuantizationType, PrecisionToken] = {
    entry.qtype: entry for entry in PRECISION_TOKENS.values()
}

INTEGER_TYPES = {
    GGMLQuantizationType.I8,
    GGMLQuantizationType.I16,
    GGMLQuantizationType.I32,
    GGMLQuantizationType.I64,
}

# How each source dtype is held in memory once read. GGML has no bf16/f8
# kernels on the conversion path, so those widen to the nearest float type.
_STORAGE_TYPES: Dict[str, GGMLQuantizationType] = {
    'F64': GGMLQuantizationType.F32,
    'F32': GGMLQuantizationType.F32,
    'F16': GGMLQuantizationType.F16,
    'BF16': GGMLQuantizationType.F32,
    'F8_E4M3': GGMLQuantizationType.F16,
    'F8_E5M2': GGMLQuantizationType.F16,
    'I64': GGMLQuantizationType.I32,
    'I32': GGMLQuantizationType.I32,
    'I16': GGMLQuantizationType.I16,
    'I8': GGMLQuantizationType.I8,
    'U8': GGMLQuantizationType.I16,
    'BOOL': GGMLQuantizationType.I8,
}


def resolve_type_token(token: str) -> Optional[GGMLQuantizationType]:
    """
    Resolve a precision token to its canonical element type.

    Tokens are case-sensitive. Anything outside the fixed set resolves to
    None, which callers must treat as a configuration error.

    Example:
        >>> resolve_type_token('q4_0')
        <GGMLQuantizationType.Q4_0: 2>
        >>> resolve_type_token('Q4_0') is None
        True
    """
    entry = PRECISION_TOKENS.get(token)
    return entry.qtype if entry else None


def file_type_for(qtype: GGMLQuantizationType) -> LlamaFileType:
    """Container-level file type code for a default output type."""
    return _TOKENS_BY_TYPE[qtype].file_type


def type_display_name(qtype: GGMLQuantizationType) -> str:
    """Upper-case type name used in generated filenames ('F16', 'Q4_K')."""
    return qtype.name.upper()


def block_size(qtype: GGMLQuantizationType) -> int:
    return GGML_QUANT_SIZES[qtype][0]


def is_quantized(qtype: GGMLQuantizationType) -> bool:
    """True for block formats (Q8_0, Q4_K, ...)."""
    return block_size(qtype) > 1


def is_float_type(qtype: GGMLQuantizationType) -> bool:
    """Float or block-quantized float data, i.e. something we may convert."""
    return qtype not in INTEGER_TYPES


def tensor_nbytes(shape: Sequence[int], qtype: GGMLQuantizationType) -> int:
    """
    Number of payload bytes for a tensor of this shape and type.

    Raises:
        ValueError: If the innermost dimension isn't a whole number of blocks
    """
    size, type_size = GGML_QUANT_SIZES[qtype]
    n_elements = 1
    for dim in shape:
        n_elements *= int(dim)
    if shape and int(shape[-1]) % size != 0:
        raise ValueError(
            f"Dimension {shape[-1]} is not a multiple of the {qtype.name} block size ({size})"
        )
    return n_elements // size * type_size


def storage_type_for(dtype_name: str) -> GGMLQuantizationType:
    """
    Element type a payload is held as after reading.

    Accepts safetensors dtype names ('BF16', 'F8_E4M3', ...) and GGML type
    names ('Q4_0', 'F16', ...), which map to themselves.

    Raises:
        ValueError: If the dtype isn't something we can read
    """
    if dtype_name in _STORAGE_TYPES:
        return _STORAGE_TYPES[dtype_name]
    try:
        qtype = GGMLQuantizationType[dtype_name]
    except KeyError:
        raise ValueError(f"Unsupported tensor dtype: {dtype_name}")
    if qtype == GGMLQuantizationType.F64:
        return GGMLQuantizationType.F32
    return qtype


def validate_type_tokens() -> None:
    """
    Check the token table is one-to-one and every type has a block geometry.

    Runs at import so a broken table fails loudly instead of producing
    unreadable containers.
    """
    if len(_TOKENS_BY_TYPE) != len(PRECISION_TOKENS):
        raise RuntimeError("Precision token table maps two tokens to the same type")
    for token, entry in PRECISION_TOKENS.items():
        if token != entry.token:
            raise RuntimeError(f"Precision token table key mismatch: {token} != {entry.token}")
        if entry.qtype not in GGML_QUANT_SIZES:
            raise RuntimeError(f"No block geometry known for {entry.qtype.name}")


validate_type_tokens()
