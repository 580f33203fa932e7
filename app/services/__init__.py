"""Service layer: catalog, generator, entitlement clients and the pipeline."""
