"""
Image processing engines.

Stateless algorithms over decoded rasters, plus the upscaler adapter that
fronts the external inference service.
"""
