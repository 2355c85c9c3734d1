"""Volume binding: the instance arena and the single-writer attachment manager."""
