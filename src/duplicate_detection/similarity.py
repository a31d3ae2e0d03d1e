"""Score helpers shared by the similarity oracles.

Cosine similarity over embedding vectors (NumPy) and clamping of raw oracle
scores into the closed interval [0, 1] used by classification.
"""

import math

import numpy as np


def cosine_similarity(vec_a: np.ndarray, vec_b: np.ndarray) -> float:
    """Compute cosine similarity between two vectors.

    Args:
        vec_a: First embedding vector.
        vec_b: Second embedding vector.

    Returns:
        Cosine similarity in [-1.0, 1.0].
        Returns 0.0 if either vector has zero magnitude.

    Example:
        >>> import numpy as np
        >>> a = np.array([1.0, 0.0, 0.0])
        >>> b = np.array([1.0, 0.0, 0.0])
        >>> cosine_similarity(a, b)
        1.0
    """
    dot_product = np.dot(vec_a, vec_b)
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(dot_product / (norm_a * norm_b))


def clamp_score(value: float) -> float:
    """Clamp a finite score into [0.0, 1.0].

    Raises:
        ValueError: If the score is NaN or infinite.
    """
    if not math.isfinite(value):
        raise ValueError(f"Similarity score is not finite: {value}")
    return min(max(float(value), 0.0), 1.0)
