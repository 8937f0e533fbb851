"""Camera capture, recording and live streaming service.

Captures stills with detection overlays, records client-produced media
chunks into session artifacts, and relays live frames over a WebSocket
push channel with an HTTP chunk fallback.
"""

__version__ = "0.1.0"
