"""studygraph: semantic chunking, hybrid retrieval and concept graphs for study material."""

__version__ = "0.1.0"
