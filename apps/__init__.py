"""
Apps package - FastAPI services.

- web_gateway: CSP enforcement, violation reporting and the SSRF-guarded
  image proxy
"""
