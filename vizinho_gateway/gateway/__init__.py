"""
Vizinho Virtual Gateway - Request Screening

Attack signature detection, the security middleware, RBAC policy and the
downstream proxy.
"""
