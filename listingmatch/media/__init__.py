"""Media retrieval and image decoding for the visual signal."""
