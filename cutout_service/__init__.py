"""
Background removal package.

Exposes reusable primitives for acquiring segmentation models, letterboxing
images, running inference, compositing alpha masks, and serving the FastAPI
application.
"""
