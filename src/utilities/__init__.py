"""Cross-project utilities (Hydra/MLflow tracking)."""
