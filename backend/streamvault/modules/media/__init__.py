"""Media inspection and the rendition resolution ladder."""
