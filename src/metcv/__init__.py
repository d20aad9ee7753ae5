"""Cross-validation of genomic prediction models on multi-environment trials."""

__version__ = "0.1.0"
