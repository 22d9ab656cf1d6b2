"""FastAPI surface for the billing engine."""
