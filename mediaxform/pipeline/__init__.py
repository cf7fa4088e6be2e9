"""
Image Transform Pipeline

Fixed-order stages applied to an in-memory image:
1. resize      5. filters (grayscale, then sepia)
2. rotate      6. flip, then mirror
3. crop        7. compress
4. format      8. watermark
"""

# Bump whenever a stage's output changes for the same input; it is part of
# every fingerprint, so cached results from the old operation set stop matching.
PIPELINE_VERSION = "1"
