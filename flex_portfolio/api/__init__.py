"""HTTP surface of the flex portfolio service."""
