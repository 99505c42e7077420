# Part of Plinth, see License file for full copyright and licensing details.
"""
Template rendering.

The templates are Jinja2 files named ``<name>.<format>`` under the view
paths of the application: ``photos/index.html``, ``photos/show.json``,
``photos/_photo.html`` for a partial and ``layouts/application.html`` for
the layout wrapping the pages. The layout receives the page as
``content`` and the blocks stored with ``content_for``::

    <title>{{ content_for('title') or 'Photos' }}</title>
    {{ csrf_meta_tags() }}
    <main>{{ content }}</main>

Templates have the view helpers at hand (``link_to``, ``form_tag``,
``number_to_currency``, ...), the named route helpers (``photo_path``),
the controller public attributes and the ``view`` object, the
:class:`ViewContext` of the rendering.
"""
import logging
import os

import jinja2
import werkzeug.local
from markupsafe import Markup, escape

from ..exceptions import MissingTemplate

_logger = logging.getLogger(__name__)

__all__ = [
    'ViewContext',
    'ViewRenderer',
    'current_view',
]

# The ViewContext of the ongoing renderings, innermost last
_view_stack = werkzeug.local.LocalStack()


def current_view():
    """ The :class:`ViewContext` rendering the current template, ``None``
    outside of renderings. """
    return _view_stack.top


class ViewContext:
    """ Per rendering object given to the templates as ``view``; its
    methods are also available as template functions. """
    def __init__(self, renderer, assigns=None, format='html'):
        self.renderer = renderer
        self.assigns = dict(assigns or {})
        self.format = format
        self.controller = self.assigns.get('controller')
        self._content_for = {}
        self._cycles = {}
        self._template_dir = None

    def __repr__(self):
        return f'<ViewContext {self.format} {self.controller!r}>'

    def __getattr__(self, attr):
        # named route helpers, photos_path() / photo_url(photo)
        if attr.endswith(('_path', '_url')) and not attr.startswith('_'):
            if self.controller is not None:
                return getattr(self.controller, attr)
            if self.renderer.app is not None:
                return getattr(self.renderer.app.routes.url_helpers(), attr)
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {attr!r}")

    # -------------------------------------------------------
    # Request objects
    # -------------------------------------------------------
    @property
    def request(self):
        if self.controller is not None:
            return self.controller.request
        return self.assigns.get('request')

    @property
    def params(self):
        return self.request.params if self.request is not None else {}

    @property
    def session(self):
        return self.request.session if self.request is not None else None

    @property
    def flash(self):
        return self.request.flash if self.request is not None else None

    def url_for(self, name_or_options, *args, **params):
        if self.controller is not None:
            return self.controller.url_for(name_or_options, *args, **params)
        return self.renderer.app.url_for(name_or_options, *args, **params)

    # -------------------------------------------------------
    # Content blocks
    # -------------------------------------------------------
    def content_for(self, name, value=None, flush=False, caller=None):
        """ Store ``value`` (or the body of a ``{% call %}`` block) under
        ``name``; without value, give what was stored. """
        if caller is not None:
            value = caller()
        if value is None:
            return Markup(self._content_for.get(name, ''))
        value = escape(value)
        if flush or name not in self._content_for:
            self._content_for[name] = value
        else:
            self._content_for[name] += value
        return Markup('')

    def has_content_for(self, name):
        return bool(self._content_for.get(name))

    def provide(self, name, value=None, caller=None):
        """ Same as :meth:`content_for` with ``flush``: the value replaces
        the stored one. """
        return self.content_for(name, value, flush=True, caller=caller)

    # -------------------------------------------------------
    # Partials
    # -------------------------------------------------------
    def _partial_name(self, partial):
        directory, _, name = partial.rpartition('/')
        if not directory:
            if self.controller is not None:
                directory = self.controller.controller_path
            else:
                directory = self._template_dir or ''
        return f'{directory}/_{name}' if directory else f'_{name}'

    def render(self, partial=None, collection=None, as_=None, locals=None, spacer_template=None,
               object=None, template=None):
        """
        Render a partial, ``photos/_photo.html`` for ``render('photo')``
        in a view of the photos controller.

        :param collection: render the partial once per item, the item
            being the ``<as_>`` local, its index ``<as_>_counter``
        :param as_: name of the item local, the partial name by default
        :param locals: extra variables of the partial
        :param spacer_template: partial rendered between the items
        :param object: the value of the ``<as_>`` local
        :param template: render a full template instead
        """
        locals = dict(locals or {})
        if template is not None:
            return Markup(self.renderer._render_template(template, self, locals))
        if partial is None:
            raise ValueError("render() needs a partial or a template")
        name = self._partial_name(partial)
        local_name = as_ or partial.rpartition('/')[2]
        if collection is None:
            if object is not None:
                locals[local_name] = object
            return Markup(self.renderer._render_template(name, self, locals))

        spacer = self._partial_name(spacer_template) if spacer_template else None
        parts = []
        for counter, item in enumerate(collection):
            if counter and spacer:
                parts.append(self.renderer._render_template(spacer, self, locals))
            item_locals = dict(locals)
            item_locals[local_name] = item
            item_locals[f'{local_name}_counter'] = counter
            parts.append(self.renderer._render_template(name, self, item_locals))
        return Markup(''.join(parts))

    # -------------------------------------------------------
    # Security
    # -------------------------------------------------------
    def form_authenticity_token(self):
        if self.request is None:
            return None
        return self.request.form_authenticity_token()

    def protect_against_forgery(self):
        return self.controller is not None and self.controller.protect_against_forgery()

    def csrf_meta_tags(self):
        """ The ``csrf-param`` and ``csrf-token`` meta tags, for the
        scripts sending non-GET requests. """
        if not self.protect_against_forgery():
            return Markup('')
        return Markup('<meta name="csrf-param" content="authenticity_token" />\n'
                      '<meta name="csrf-token" content="%s" />') % self.form_authenticity_token()

    def content_security_policy_nonce(self):
        from ..content_security_policy import nonce_for  # noqa: PLC0415
        request = self.request
        if request is None:
            return None
        return nonce_for(request.environ)

    def csp_meta_tag(self, **options):
        from .helpers.csp import csp_meta_tag  # noqa: PLC0415
        return csp_meta_tag(**options)

    # -------------------------------------------------------
    # Template variables
    # -------------------------------------------------------
    def _route_helpers(self):
        app = self.renderer.app
        if app is None:
            return {}
        routes = app.routes
        if self.controller is not None:
            helpers = self.controller.url_helpers
        else:
            helpers = routes.url_helpers(self.request.environ if self.request is not None else None)
        return {
            f'{name}{suffix}': getattr(helpers, f'{name}{suffix}')
            for name in [*routes.named_routes, *routes.direct_helpers]
            for suffix in ('_path', '_url')
        }

    def template_context(self, locals=None):
        context = dict(self.assigns)
        context.update(
            view=self,
            request=self.request,
            params=werkzeug.local.LocalProxy(lambda: self.params),
            session=werkzeug.local.LocalProxy(lambda: self.session),
            flash=werkzeug.local.LocalProxy(lambda: self.flash),
            url_for=self.url_for,
            render=self.render,
            content_for=self.content_for,
            has_content_for=self.has_content_for,
            provide=self.provide,
            csrf_meta_tags=self.csrf_meta_tags,
            csp_meta_tag=self.csp_meta_tag,
            content_security_policy_nonce=self.content_security_policy_nonce,
            form_authenticity_token=self.form_authenticity_token,
        )
        context.update(self._route_helpers())
        context.update(locals or {})
        return context


class ViewRenderer:
    """
    Jinja2 environment over the view paths of an application.

    :param view_paths: directories searched in order
    :param app: the :class:`~plinth.http.Application`, for the route
        helpers and the asset host
    """
    def __init__(self, view_paths, app=None, auto_reload=False):
        self.view_paths = [os.path.abspath(path) for path in view_paths]
        self.app = app
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(self.view_paths),
            autoescape=True,
            auto_reload=auto_reload,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        from . import helpers  # noqa: PLC0415
        self.env.globals.update(helpers.HELPERS)
        self.env.filters.update(helpers.FILTERS)

    def __repr__(self):
        return f'<ViewRenderer {self.view_paths}>'

    @staticmethod
    def template_name(name, format='html'):
        return f'{name}.{format}'

    def find(self, name, format='html'):
        """ The jinja2 template ``<name>.<format>``, ``None`` if there is
        none. """
        try:
            return self.env.get_template(self.template_name(name, format))
        except jinja2.TemplateNotFound:
            return None

    def exists(self, name, format='html'):
        return self.find(name, format) is not None

    def _get(self, name, format):
        template = self.find(name, format)
        if template is None:
            raise MissingTemplate([self.template_name(name, format)], self.view_paths)
        return template

    def _render_template(self, name, view, locals=None):
        template = self._get(name, view.format)
        _view_stack.push(view)
        try:
            _logger.debug("Rendering %s", template.name)
            return template.render(view.template_context(locals))
        finally:
            _view_stack.pop()

    def _find_layout(self, layout, format):
        if not layout:
            return None
        if isinstance(layout, str):
            return self._get(layout, format)
        for name in layout:
            template = self.find(name, format)
            if template is not None:
                return template
        return None

    def render(self, template, context=None, layout=None, format='html'):
        """
        Render ``template`` within its layout.

        :param str template: template name without format, e.g.
            ``'photos/index'``
        :param dict context: template variables; the ``controller`` entry
            gives the request objects and route helpers
        :param layout: layout name (must exist), list of candidate names
            (the first existing one is used) or ``False``/``None`` for no
            layout
        :param str format: the template format
        :raises MissingTemplate: when the template is not found
        """
        view = ViewContext(self, context, format)
        view._template_dir = template.rpartition('/')[0]
        content = Markup(self._render_template(template, view))
        layout_template = self._find_layout(layout, format)
        if layout_template is None:
            return str(content)
        _view_stack.push(view)
        try:
            _logger.debug("Rendering layout %s", layout_template.name)
            return layout_template.render(view.template_context({'content': content}))
        finally:
            _view_stack.pop()
