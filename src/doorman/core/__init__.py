"""Provider-neutral core: models, diffing, validation and sync orchestration."""
