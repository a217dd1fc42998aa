"""Authentication module (bearer JWT).

Services:
    - issue_token / decode_token: HS256 tokens whose subject is the email.
    - get_current_user: FastAPI dependency for protected routes.
"""
