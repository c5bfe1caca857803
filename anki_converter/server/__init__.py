"""HTTP host: FastAPI app, job store, and request/response models."""
