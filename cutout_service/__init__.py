"""
Person-segmentation background remover.

Exposes reusable primitives for loading the segmentation model, decoding
uploads, building hard-alpha cutouts, and orchestrating one upload-to-result
session at a time.
"""
