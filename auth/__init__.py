"""auth/ -- Credential store and realm registry for configurable user/role schemas.

Layer rule: auth/ may import from core/ (the kernel) and third-party
libraries. core/ never imports from auth/.
"""
