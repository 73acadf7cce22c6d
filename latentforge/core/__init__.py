"""latentforge core: options, errors, registry, schedulers, stages and the run engine."""
