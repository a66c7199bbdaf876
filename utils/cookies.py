def apply_cookies(response, cookies):
    """Apply CookieInstruction objects produced by the engine to a Flask response."""
    for cookie in cookies:
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            httponly=cookie.httponly,
            samesite=cookie.samesite,
            secure=cookie.secure,
            path=cookie.path
        )
    return response
