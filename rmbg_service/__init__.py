"""
RMBG background removal package.

Exposes reusable primitives for loading the segmentation model, running
inference on a background worker, compositing alpha masks, and serving the
FastAPI application that drives the upload/preview/download flow.
"""

__version__ = "0.1.0"
