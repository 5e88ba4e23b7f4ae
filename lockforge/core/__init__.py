"""lockforge core: cache, lock resolution, compiler, image assembly, orchestration."""
