# Part of Plinth, see License file for full copyright and licensing details.
"""
Content-Security-Policy header builder.

.. code-block:: python

    from plinth.content_security_policy import ContentSecurityPolicy as CSP

    policy = CSP()
    policy.default_src(CSP.SELF, CSP.HTTPS)
    policy.script_src(CSP.SELF, 'https://cdn.example.com')
    policy.img_src(CSP.SELF, CSP.DATA, lambda ctx: ctx.request.host_url)
    policy.build(context)
    # "default-src 'self' https:; script-src 'self' https://cdn.example.com; ..."

Source keywords are :class:`Keyword` instances (``CSP.SELF``,
``CSP.UNSAFE_INLINE``, ...); plain strings are emitted as-is except hash
sources (``sha256-...``) which get quoted. Callables are resolved against
the build context.
"""
import copy
import json
import logging
import re
from urllib.parse import urlsplit

from werkzeug.datastructures import Headers

_logger = logging.getLogger(__name__)

__all__ = [
    'ContentSecurityPolicy',
    'ContentSecurityPolicyMiddleware',
    'InvalidDirectiveError',
    'Keyword',
    'ReportingEndpointError',
]

POLICY = 'plinth.content_security_policy'
POLICY_REPORT_ONLY = 'plinth.content_security_policy_report_only'
NONCE_GENERATOR = 'plinth.content_security_policy_nonce_generator'
NONCE = 'plinth.content_security_policy_nonce'
NONCE_DIRECTIVES = 'plinth.content_security_policy_nonce_directives'
CONTEXT = 'plinth.content_security_policy_context'

HEADER = 'Content-Security-Policy'
HEADER_REPORT_ONLY = 'Content-Security-Policy-Report-Only'


class InvalidDirectiveError(ValueError):
    pass


class ReportingEndpointError(ValueError):
    def __init__(self, message, provided_data=None):
        if provided_data is not None:
            message = f"{message}, provided data: {provided_data!r}"
        super().__init__(message)


class Keyword(str):
    """ A source keyword, mapped to its CSP spelling at definition time. """
    __slots__ = ()

    def __repr__(self):
        return f'Keyword({str(self)!r})'


MAPPINGS = {
    'self': "'self'",
    'unsafe_eval': "'unsafe-eval'",
    'wasm_unsafe_eval': "'wasm-unsafe-eval'",
    'unsafe_hashes': "'unsafe-hashes'",
    'unsafe_inline': "'unsafe-inline'",
    'none': "'none'",
    'http': 'http:',
    'https': 'https:',
    'data': 'data:',
    'mediastream': 'mediastream:',
    'allow_duplicates': "'allow-duplicates'",
    'blob': 'blob:',
    'filesystem': 'filesystem:',
    'report_sample': "'report-sample'",
    'script': "'script'",
    'strict_dynamic': "'strict-dynamic'",
    'ws': 'ws:',
    'wss': 'wss:',
}

DIRECTIVES = {
    'base_uri': 'base-uri',
    'child_src': 'child-src',
    'connect_src': 'connect-src',
    'default_src': 'default-src',
    'font_src': 'font-src',
    'form_action': 'form-action',
    'frame_ancestors': 'frame-ancestors',
    'frame_src': 'frame-src',
    'img_src': 'img-src',
    'manifest_src': 'manifest-src',
    'media_src': 'media-src',
    'object_src': 'object-src',
    'prefetch_src': 'prefetch-src',
    'require_trusted_types_for': 'require-trusted-types-for',
    'script_src': 'script-src',
    'script_src_attr': 'script-src-attr',
    'script_src_elem': 'script-src-elem',
    'style_src': 'style-src',
    'style_src_attr': 'style-src-attr',
    'style_src_elem': 'style-src-elem',
    'trusted_types': 'trusted-types',
    'worker_src': 'worker-src',
}

HASH_SOURCE_ALGORITHM_PREFIXES = ('sha256-', 'sha384-', 'sha512-')
DEFAULT_NONCE_DIRECTIVES = ('script-src', 'style-src')


def _directive_method(name, directive):
    def method(self, *sources):
        if sources and sources[0]:
            self.directives[directive] = self._apply_mappings(sources)
        else:
            self.directives.pop(directive, None)
        return self
    method.__name__ = name
    method.__doc__ = f"Set the ``{directive}`` directive, no source removes it."
    return method


class ContentSecurityPolicy:
    def __init__(self, configure=None):
        self.directives = {}
        self.report_directives = {}
        if configure is not None:
            configure(self)

    def copy(self):
        return copy.deepcopy(self)

    def __copy__(self):
        return self.copy()

    def __deepcopy__(self, memo):
        new = type(self).__new__(type(self))
        new.directives = {
            k: list(v) if isinstance(v, list) else v for k, v in self.directives.items()
        }
        new.report_directives = copy.deepcopy(self.report_directives, memo)
        return new

    def __eq__(self, other):
        if not isinstance(other, ContentSecurityPolicy):
            return NotImplemented
        return self.directives == other.directives and self.report_directives == other.report_directives

    __hash__ = None

    def block_all_mixed_content(self, enabled=True):
        if enabled:
            self.directives['block-all-mixed-content'] = True
        else:
            self.directives.pop('block-all-mixed-content', None)
        return self

    def upgrade_insecure_requests(self, enabled=True):
        if enabled:
            self.directives['upgrade-insecure-requests'] = True
        else:
            self.directives.pop('upgrade-insecure-requests', None)
        return self

    def plugin_types(self, *types):
        if types and types[0]:
            self.directives['plugin-types'] = list(types)
        else:
            self.directives.pop('plugin-types', None)
        return self

    def require_sri_for(self, *types):
        if types and types[0]:
            self.directives['require-sri-for'] = list(types)
        else:
            self.directives.pop('require-sri-for', None)
        return self

    def sandbox(self, *values):
        """ ``sandbox()`` enables the sandbox with no exception,
        ``sandbox('allow-scripts')`` lists them, ``sandbox(False)`` removes
        it. """
        if not values:
            self.directives['sandbox'] = True
        elif values[0]:
            self.directives['sandbox'] = list(values)
        else:
            self.directives.pop('sandbox', None)
        return self

    def report_uri(self, uri):
        self.directives['report-uri'] = [uri]
        return self

    def report_to(self, group, endpoints=None):
        """ Set the ``report-to`` directive and the data of the
        ``Report-To`` and ``Reporting-Endpoints`` headers.

        ``endpoints`` is ``None`` (the group name is the endpoint), an URL,
        a callable returning a dict, or a dict mapping group names to an
        URL or to ``{'urls': [...], 'max_age': ..., 'include_subdomains': ...}``.
        """
        self._validate_group_name(group)
        group_name = self._sanitize_group_name(group)

        if endpoints is None:
            group_endpoints = {group: group}
        elif isinstance(endpoints, str):
            group_endpoints = {group: endpoints}
        elif callable(endpoints):
            group_endpoints = endpoints()
            if not isinstance(group_endpoints, dict):
                raise ReportingEndpointError("CSP reporting endpoints callable must return a dict", group_endpoints)
        elif isinstance(endpoints, dict):
            group_endpoints = endpoints
        else:
            raise ReportingEndpointError("Invalid CSP reporting endpoint type", endpoints)

        for endpoint in group_endpoints.values():
            if isinstance(endpoint, str):
                self.report_uri(endpoint)

        report_to, reporting_endpoints = self._build_reporting_endpoints(group_endpoints)
        self.directives['report-to'] = [group_name]
        self.report_directives['report-to'] = report_to
        self.report_directives['reporting-endpoints'] = reporting_endpoints
        return self

    def build(self, context=None, nonce=None, nonce_directives=None):
        """ Header value of the policy. """
        if nonce_directives is None:
            nonce_directives = DEFAULT_NONCE_DIRECTIVES
        parts = []
        for directive, sources in self.directives.items():
            if isinstance(sources, list):
                values = self._build_directive(directive, sources, context)
                if nonce and directive in nonce_directives:
                    values.append(f"'nonce-{nonce}'")
                parts.append(' '.join([directive, *values]))
            elif sources:
                parts.append(directive)
        return '; '.join(parts)

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _apply_mappings(self, sources):
        resolved = []
        for source in sources:
            if isinstance(source, Keyword):
                resolved.append(self._apply_mapping(source))
            elif isinstance(source, str):
                resolved.append(f"'{source}'" if source.startswith(HASH_SOURCE_ALGORITHM_PREFIXES) else source)
            elif callable(source):
                resolved.append(source)
            else:
                raise ValueError(f"Invalid content security policy source: {source!r}")
        return resolved

    def _apply_mapping(self, source):
        try:
            return MAPPINGS[source]
        except KeyError:
            raise ValueError(f"Unknown content security policy source mapping: {source!r}") from None

    def _build_directive(self, directive, sources, context):
        values = []
        for source in sources:
            if isinstance(source, str):
                values.append(source)
            elif callable(source):
                if context is None:
                    raise RuntimeError(f"Missing context for the dynamic content security policy source: {source!r}")
                result = source(context)
                if not isinstance(result, (list, tuple)):
                    result = [result]
                values.extend(self._apply_mappings(result))
            else:
                raise RuntimeError(f"Unexpected content security policy source: {source!r}")
        for value in values:
            if ';' in value or re.search(r'\s', value):
                raise InvalidDirectiveError(
                    f'Invalid Content Security Policy {directive}: "{value}". '
                    'Directive values must not contain whitespace or semicolons. '
                    'Please use multiple arguments or other directive methods instead.'
                )
        return values

    def _build_reporting_endpoints(self, group_endpoints):
        report_to, reporting_endpoints = [], []
        valid_keys = ('urls', 'max_age', 'include_subdomains')
        for key, endpoint in group_endpoints.items():
            group_name = self._sanitize_group_name(key)
            if isinstance(endpoint, str):
                reporting_endpoints.append(f'{group_name}="{endpoint}"')
            elif isinstance(endpoint, dict):
                invalid = [k for k in endpoint if k not in valid_keys]
                if invalid:
                    raise ReportingEndpointError(
                        "Invalid CSP reporting endpoint keys. Valid keys: %s" % ', '.join(valid_keys), invalid)
                urls = [url for url in endpoint.get('urls') or [] if url]
                data = {
                    'group': group_name,
                    'max_age': endpoint.get('max_age') or 86400,
                    'endpoints': [{'url': url} for url in urls],
                }
                if 'include_subdomains' in endpoint:
                    data['include_subdomains'] = endpoint['include_subdomains']
                report_to.append(json.dumps(data, separators=(',', ':')))
                reporting_endpoints.extend(f'{group_name}="{url}"' for url in urls)
            elif endpoint is None:
                reporting_endpoints.append(f'{group_name}="/{key}"')
            else:
                raise ReportingEndpointError("Invalid CSP reporting endpoint type", endpoint)
        return report_to, reporting_endpoints

    def _validate_group_name(self, group):
        if not isinstance(group, str):
            raise ReportingEndpointError("CSP group name must be a String", group)
        if not group.strip():
            raise ReportingEndpointError("CSP group name cannot be empty", group)
        if '://' in group:
            try:
                urlsplit(group)
            except ValueError:
                raise ReportingEndpointError("Invalid CSP group name URI format", group) from None

    def _sanitize_group_name(self, group):
        sanitized = re.sub(r'^/+', '', str(group)).lower()
        sanitized = re.sub(r'[^a-z0-9_-]+', '-', sanitized)
        return re.sub(r'^-+|-+$', '', sanitized)


for _name, _directive in DIRECTIVES.items():
    setattr(ContentSecurityPolicy, _name, _directive_method(_name, _directive))
for _name in MAPPINGS:
    setattr(ContentSecurityPolicy, _name.upper(), Keyword(_name))
del _name, _directive


# ------------------------------------------------------------
# Middleware
# ------------------------------------------------------------

def nonce_for(environ):
    """ Nonce of the current request, generated once on first use when a
    nonce generator is configured. """
    if NONCE not in environ:
        generator = environ.get(NONCE_GENERATOR)
        if generator is None:
            return None
        environ[NONCE] = generator(environ)
    return environ[NONCE]


class ContentSecurityPolicyMiddleware:
    """ Add the policy stored in the environ (``plinth.content_security_policy``)
    to the responses which do not carry one already. """
    def __init__(self, app):
        self.app = app

    def __call__(self, environ, start_response):
        def _start_response(status, headers, exc_info=None):
            headers = Headers(headers)
            if self._wants_policy(status, headers):
                self._add_policy(environ, headers)
            return start_response(status, headers.to_wsgi_list(), exc_info)
        return self.app(environ, _start_response)

    def _wants_policy(self, status, headers):
        if status.split(' ', 1)[0] == '304':
            return False
        return HEADER not in headers and HEADER_REPORT_ONLY not in headers

    def _add_policy(self, environ, headers):
        policy = environ.get(POLICY)
        if not policy:
            return
        reports = policy.report_directives
        if reports.get('report-to'):
            headers['Report-To'] = '[%s]' % ', '.join(reports['report-to'])
        if reports.get('reporting-endpoints'):
            headers['Reporting-Endpoints'] = ', '.join(reports['reporting-endpoints'])
        name = HEADER_REPORT_ONLY if environ.get(POLICY_REPORT_ONLY) else HEADER
        headers[name] = policy.build(
            environ.get(CONTEXT),
            nonce_for(environ),
            environ.get(NONCE_DIRECTIVES),
        )
