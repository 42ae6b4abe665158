"""Pure domain primitives shared by all tranche packages."""
