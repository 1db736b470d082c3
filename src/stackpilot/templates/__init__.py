"""Template directory discovery and parameter file rendering."""
