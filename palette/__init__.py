"""Director's Palette generation backend."""
