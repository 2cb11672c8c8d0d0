"""Authentication, authorization and audit.

- **passwords**: bcrypt hashing for local users
- **tokens**: HS256 JWT issue / verify
- **rbac**: casbin-backed workspace and admin policies
- **audit**: append-only audit log entries
"""
