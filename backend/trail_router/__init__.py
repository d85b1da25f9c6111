"""Trail loop routing engine: graph model, constrained pathfinding and loop search."""
