"""Run description: image references, transform classes and path helpers."""

from .models import ImageClass, ImageRef, TransformClass
from .paths import normalise_pathlike, normalise_prefix, prefix_directory

__all__ = [
    "ImageClass",
    "ImageRef",
    "TransformClass",
    "normalise_pathlike",
    "normalise_prefix",
    "prefix_directory",
]
