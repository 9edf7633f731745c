"""Tile plugins that ship with cfops."""
