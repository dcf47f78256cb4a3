"""Helper functions for deterministic user assignment.

Hash the user + experiment (+ salt) into one of 100 buckets, then pick a
variant based on cumulative weights. Nothing here touches process state, so
the same inputs give the same bucket on any machine and after restarts.
"""
from typing import List, Optional, Tuple

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
MASK_32 = 0xFFFFFFFF

INCLUDE_SALT = "include"
VARIANT_SALT = "variant"


def fnv1a_32(text: str) -> int:
    """32-bit FNV-1a over the UTF-8 bytes of text"""
    h = FNV_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & MASK_32
    return h


def _fmix32(h: int) -> int:
    # murmur3 finalizer, spreads entropy into the low bits used by mod 100
    h ^= h >> 16
    h = (h * 0x85EBCA6B) & MASK_32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & MASK_32
    h ^= h >> 16
    return h


def bucket(user_id: str, test_id: str, salt: str) -> int:
    """
    Deterministic bucket in [0, 100) for a user within a test.

    Different salts give independent buckets for the same user, which is how
    the inclusion gate and the variant pick stay uncorrelated.
    """
    combined = f"{user_id}{test_id}{salt}"
    return abs(_fmix32(fnv1a_32(combined))) % 100


def assign_variant(
    hash_value: int,
    variants_with_weights: List[Tuple[str, float]],
    fallback: Optional[str] = None,
) -> str:
    """
    Assign variant based on hash value and traffic weights.

    Args:
        hash_value: Integer 0-99 from bucket()
        variants_with_weights: List of tuples (variant_id, weight), declared order
        fallback: variant_id to use if rounding leaves the bucket uncovered
            (the control variant); defaults to the first variant

    Returns:
        variant_id that user should be assigned to
    """
    # Build cumulative buckets
    # Example: [30, 70] -> [0-29: variant1, 30-99: variant2]
    cumulative = 0.0
    for variant_id, weight in variants_with_weights:
        cumulative += weight
        if hash_value < cumulative:
            return variant_id

    # Only reachable when weights sum to slightly under 100
    return fallback if fallback is not None else variants_with_weights[0][0]
