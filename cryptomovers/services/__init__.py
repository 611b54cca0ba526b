"""Service layer: storage adapters, assets, exclusions and request orchestration."""
