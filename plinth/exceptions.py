# -*- coding: utf-8 -*-
# Part of Plinth, see License file for full copyright and licensing details.


"""The Plinth Exceptions module defines the core exception types.

Those types are understood by the dispatching layer: each one maps to an
HTTP status (see :data:`plinth.middleware.exceptions.RESCUE_RESPONSES`).
Any other exception type bubbling until the dispatching layer will be
treated as a 'Server error'.
"""


class UserError(Exception):
    """Generic error managed by the client.

    Typically when the user sends something that has no sense given the
    current state of the application. Semantically comparable to the
    generic 400 HTTP status codes.
    """

    def __init__(self, message):
        """
        :param message: exception message and error page content
        """
        super().__init__(message)

class AccessError(UserError):
    """Access rights error.

    .. admonition:: Example

        When you try to read a resource that you are not allowed to.
    """

class AccessDenied(UserError):
    """Login/password error.

    .. note::

        No traceback.

    .. admonition:: Example

        When you try to log with a wrong password.
    """

    def __init__(self, message="Access Denied"):
        super().__init__(message)
        self.with_traceback(None)
        self.__cause__ = None
        self.traceback = ('', '', '')


class SessionExpiredException(Exception):
    pass


# ---------------------------------------------------------
# Routing
# ---------------------------------------------------------

class RoutingError(Exception):
    """No route matches the request path and method."""


class UrlGenerationError(RoutingError):
    """A path or URL could not be generated from a route name or options."""

class ActionNotFound(RoutingError):
    """The matched controller has no public method for the action."""


# ---------------------------------------------------------
# Parameters
# ---------------------------------------------------------

class ParameterMissing(KeyError):
    """Raised by :meth:`Parameters.require` when the key is missing or blank."""

    def __init__(self, param, keys=None):
        self.param = param
        self.keys = keys
        super().__init__(f"param is missing or the value is empty or invalid: {param}")

    def __str__(self):
        return self.args[0]

class UnpermittedParameters(IndexError):
    """Raised when unpermitted keys are found and the application is
    configured to raise on them."""

    def __init__(self, params):
        self.params = list(params)
        noun = 'parameter' if len(self.params) == 1 else 'parameters'
        super().__init__(f"found unpermitted {noun}: {', '.join(self.params)}")

class UnfilteredParameters(ValueError):
    """Raised when an unpermitted :class:`Parameters` is converted to a dict."""

    def __init__(self):
        super().__init__("unable to convert unpermitted parameters to dict")


# ---------------------------------------------------------
# Controllers
# ---------------------------------------------------------

class InvalidAuthenticityToken(Exception):
    pass

class InvalidCrossOriginRequest(InvalidAuthenticityToken):
    pass

class UnknownFormat(Exception):
    pass

class DoubleRenderError(Exception):
    DEFAULT_MESSAGE = (
        "Render and/or redirect were called multiple times in this action. "
        "Please note that you may only call render OR redirect, and at most "
        "once per action."
    )

    def __init__(self, message=None):
        super().__init__(message or self.DEFAULT_MESSAGE)

class UnsafeRedirectError(Exception):
    pass

class MissingTemplate(Exception):
    def __init__(self, names, paths):
        self.names = list(names)
        self.paths = list(paths)
        super().__init__(
            "Missing template %s in view paths %s" % (
                ', '.join(map(repr, self.names)),
                ', '.join(map(repr, self.paths)),
            )
        )
