# Part of Plinth, see License file for full copyright and licensing details.
"""
Routing: the table mapping requests to controller actions.

Routes are declared with the :class:`Mapper` DSL, in a function given to
:meth:`RouteSet.draw`::

    @app.routes.draw
    def routes(r):
        r.root('pages#home')
        r.get('/about', to='pages#about')
        with r.resources('photos'):
            r.resources('comments', only=['index', 'create'])
            with r.member():
                r.get('preview')
        with r.namespace('admin'):
            r.resources('users')

Paths use the segment notation: ``:name`` matches one segment, ``*name``
matches across slashes and parenthesized parts are optional
(``/photos/:id(.:format)``). Each route is compiled into one or more
werkzeug :class:`~werkzeug.routing.Rule`, the :class:`Route` being their
endpoint.
"""
import contextlib
import logging
import re
import threading
from urllib.parse import quote

from werkzeug.exceptions import MethodNotAllowed, NotFound
from werkzeug.routing import BaseConverter, BuildError, Map, PathConverter, Rule
from werkzeug.utils import redirect as redirect_response

from .exceptions import RoutingError, UrlGenerationError
from .tools import inflector
from .tools.func import lazy_property, synchronized
from .tools.misc import DotDict

_logger = logging.getLogger(__name__)

__all__ = [
    'Mapper',
    'Redirect',
    'Route',
    'RouteSet',
    'RoutesInspector',
    'redirect',
]

HTTP_METHODS = ('GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS')
RESOURCE_ACTIONS = ('index', 'create', 'new', 'show', 'update', 'destroy', 'edit')
SINGLETON_ACTIONS = ('show', 'create', 'update', 'destroy', 'new', 'edit')
DEFAULT_PATH_NAMES = {'new': 'new', 'edit': 'edit'}


# =========================================================
# Converters
# =========================================================

class SegmentConverter(BaseConverter):
    """ One path segment, dots excluded so that ``(.:format)`` can follow. """
    regex = r'[^/.?]+'

    def to_url(self, value):
        return quote(str(value), safe="!$&'()*+,;=:@-_~")


class GlobConverter(PathConverter):
    regex = r'.+?'
    part_isolating = False

    def to_url(self, value):
        if isinstance(value, (list, tuple)):
            value = '/'.join(map(str, value))
        return quote(str(value), safe="!$&'()*+,;=:@/-_~")


def _constraint_converter(pattern):
    if isinstance(pattern, re.Pattern):
        pattern = pattern.pattern
    # segment constraints are implicitly anchored
    pattern = re.sub(r'^(\^|\\A)|(\$|\\Z|\\z)$', '', pattern)
    return type('ConstraintConverter', (SegmentConverter,), {
        'regex': pattern,
        'part_isolating': '/' not in pattern,
    })


# =========================================================
# Path specs
# =========================================================

_TOKEN_RE = re.compile(r'(\()|(\))|:(\w+)|\*(\w+)|([^():*]+|[:*])')

def _parse(path):
    """ Parse a path spec into a tree of literals, ``('param', name)``,
    ``('glob', name)`` and ``('optional', children)`` nodes. """
    stack = [[]]
    for m in _TOKEN_RE.finditer(path):
        open_, close, param, glob, literal = m.groups()
        if open_:
            stack.append([])
        elif close:
            if len(stack) == 1:
                raise ValueError(f"Unbalanced parenthesis in route {path!r}")
            children = stack.pop()
            stack[-1].append(('optional', children))
        elif param:
            stack[-1].append(('param', param))
        elif glob:
            stack[-1].append(('glob', glob))
        else:
            stack[-1].append(literal)
    if len(stack) != 1:
        raise ValueError(f"Unbalanced parenthesis in route {path!r}")
    return stack[0]

def _expand(nodes):
    """ All the flat variants of a parsed path, longest first. """
    variants = [[]]
    for node in nodes:
        if isinstance(node, tuple) and node[0] == 'optional':
            children = _expand(node[1])
            variants = [v + c for v in variants for c in children] + variants
        else:
            variants = [v + [node] for v in variants]
    return variants

def _names(nodes, required_only=False):
    names = []
    for node in nodes:
        if isinstance(node, tuple):
            if node[0] == 'optional':
                if not required_only:
                    names.extend(_names(node[1]))
            else:
                names.append(node[1])
    return names

def normalize_path(path):
    path = '/' + '/'.join(p for p in re.split(r'/+', path) if p) if path else '/'
    # "/photos/(.:format)" -> "/photos(.:format)"
    return re.sub(r'/\((?=\.)', '(', path)


# =========================================================
# Routes
# =========================================================

class Redirect:
    """ Route target answering with a redirect.

    ``target`` is a path or URL where ``{name}`` placeholders are replaced
    by the path parameters, or a callable ``(params, request) -> location``.
    """
    def __init__(self, target, status=301):
        self.target = target
        self.status = status

    def location(self, params, request=None):
        if callable(self.target):
            return self.target(params, request)
        return self.target.format_map({k: quote(str(v), safe='') for k, v in params.items()})

    def __call__(self, params, request=None):
        return redirect_response(self.location(params, request), code=self.status)

    def __repr__(self):
        return f'redirect({self.status}, {self.target if isinstance(self.target, str) else "<callable>"})'


def redirect(target, status=301):
    return Redirect(target, status)


class Route:
    """ One entry of the routing table.

    :param path: segment notation path (``raw=False``) or werkzeug rule
        syntax (``raw=True``, used by ``@route`` decorated methods)
    :param verbs: HTTP methods, ``None`` for any
    :param controller: controller path (``'admin/users'``) or class
    :param action: action (method) name
    :param app: WSGI application of a mounted route, or a :class:`Redirect`
    """
    def __init__(self, path, verbs=None, controller=None, action=None, name=None,
                 defaults=None, constraints=None, routing=None, app=None, raw=False,
                 mount=False):
        self.path = path
        self.verbs = [v.upper() for v in verbs] if verbs else None
        self.controller = controller
        self.action = action
        self.name = name
        self.defaults = dict(defaults or {})
        self.constraints = dict(constraints or {})
        self.routing = DotDict(routing or {})
        self.routing.setdefault('type', 'http')
        self.app = app
        self.raw = raw
        self.mount = mount

    def __repr__(self):
        return f'<Route {self.verb} {self.path} {self.requirements}>'

    @property
    def routing_type(self):
        return self.routing['type']

    @property
    def verb(self):
        return '|'.join(self.verbs) if self.verbs else ''

    @property
    def controller_path(self):
        controller = self.controller
        if isinstance(controller, type):
            return controller.controller_path
        return controller

    @property
    def requirements(self):
        if isinstance(self.app, Redirect):
            return repr(self.app)
        if self.app is not None:
            return getattr(self.app, '__name__', type(self.app).__name__)
        return f'{self.controller_path}#{self.action}'

    @lazy_property
    def _nodes(self):
        return _parse(self.path) if not self.raw else []

    @lazy_property
    def required_parts(self):
        """ Names of the mandatory path parameters, in path order. """
        if self.raw:
            return re.findall(r'<(?:[^:<>]+:)?(\w+)>', self.path)
        return _names(self._nodes, required_only=True)

    @lazy_property
    def parts(self):
        if self.raw:
            return self.required_parts
        return _names(self._nodes)

    def rules(self, converters):
        """ werkzeug rules of the route, registering the constraint
        converters they need in ``converters``. """
        methods = self.verbs
        if self.raw:
            return [Rule(self.path, endpoint=self, methods=methods,
                         strict_slashes=self.routing.get('strict_slashes'))]
        if self.mount:
            base = self.path.rstrip('/')
            return [
                Rule(base or '/', endpoint=self, methods=methods),
                Rule(base + '/<path:mount_path>', endpoint=self, methods=methods),
            ]

        names = {}
        for name, pattern in self.constraints.items():
            if name in self.parts:
                key = f'c{len(converters)}'
                converters[key] = _constraint_converter(pattern)
                names[name] = key

        rules = []
        for variant in _expand(self._nodes):
            parts = []
            for node in variant:
                if isinstance(node, str):
                    parts.append(node.replace('<', '%3C').replace('>', '%3E'))
                elif node[0] == 'param':
                    parts.append(f'<{names.get(node[1], "segment")}:{node[1]}>')
                else:
                    parts.append(f'<{names.get(node[1], "glob")}:{node[1]}>')
            rule = normalize_path(''.join(parts)) if parts else '/'
            if not rule.startswith('/'):
                rule = '/' + rule
            rules.append(Rule(rule, endpoint=self, methods=methods))
        return rules


# =========================================================
# Mapper DSL
# =========================================================

def _join_name(*parts):
    return '_'.join(str(p) for p in parts if p)

def _join_path(*parts):
    return normalize_path('/'.join(str(p) for p in parts if p))


class _Resource:
    def __init__(self, name, options, singleton=False):
        self.name = str(name)
        self.singleton = singleton
        self.options = options
        self.as_ = options.get('as_') or self.name
        if singleton:
            self.singular = self.as_
            self.plural = inflector.pluralize(self.as_)
            self.controller = options.get('controller') or inflector.pluralize(self.name)
        else:
            self.plural = self.as_
            self.singular = inflector.singularize(self.as_)
            self.controller = options.get('controller') or self.name
        self.path = options.get('path') or self.name
        self.param = options.get('param') or 'id'
        self.shallow = options.get('shallow', False)
        self.path_names = dict(DEFAULT_PATH_NAMES, **(options.get('path_names') or {}))

        actions = SINGLETON_ACTIONS if singleton else RESOURCE_ACTIONS
        only, except_ = options.get('only'), options.get('except_')
        if only is not None:
            actions = [a for a in actions if a in _as_list(only)]
        if except_ is not None:
            actions = [a for a in actions if a not in _as_list(except_)]
        self.actions = actions

    @property
    def collection_name(self):
        if self.singleton:
            return self.singular
        # uncountable names: "sheep_index" vs "sheep"
        return self.plural + '_index' if self.plural == self.singular else self.plural

    @property
    def member_name(self):
        return self.singular

    @property
    def nested_param(self):
        return f'{self.singular}_{self.param}'


def _as_list(value):
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


class Mapper:
    """ Route definition DSL, see the module documentation. """
    def __init__(self, route_set):
        self.route_set = route_set
        self._scopes = [{
            'path': '',
            'module': None,
            'as': None,
            'constraints': {},
            'defaults': {},
            'controller': None,
            'shallow': False,
            'shallow_path': '',
            'shallow_prefix': None,
            'level': None,
            'resource': None,
            'routing': {},
        }]
        self._concerns = {}

    @property
    def scope_options(self):
        return self._scopes[-1]

    @contextlib.contextmanager
    def _push(self, **options):
        current = self.scope_options
        scope = dict(current)
        scope.update(options)
        self._scopes.append(scope)
        try:
            yield self
        finally:
            self._scopes.pop()

    # ------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------

    def scope(self, path=None, module=None, as_=None, constraints=None, defaults=None,
              controller=None, shallow=None, shallow_path=None, shallow_prefix=None, **routing):
        """ Nest routes under ``path``, controllers under ``module``, names
        under ``as_``; ``routing`` keys (``type``, ``csrf``, ...) are given to
        every route of the block. """
        current = self.scope_options
        options = {}
        if path:
            options['path'] = _join_path(current['path'], path)
            options['shallow_path'] = _join_path(current['shallow_path'], shallow_path or path)
        elif shallow_path:
            options['shallow_path'] = _join_path(current['shallow_path'], shallow_path)
        if module:
            options['module'] = '/'.join(p for p in (current['module'], module) if p)
        if as_:
            options['as'] = _join_name(current['as'], as_)
            options['shallow_prefix'] = _join_name(current['shallow_prefix'], shallow_prefix or as_)
        elif shallow_prefix:
            options['shallow_prefix'] = _join_name(current['shallow_prefix'], shallow_prefix)
        if constraints:
            options['constraints'] = dict(current['constraints'], **constraints)
        if defaults:
            options['defaults'] = dict(current['defaults'], **defaults)
        if controller:
            options['controller'] = controller
        if shallow is not None:
            options['shallow'] = shallow
        if routing:
            options['routing'] = dict(current['routing'], **routing)
        return self._push(**options)

    def namespace(self, name, path=None, module=None, as_=None, **options):
        """ ``namespace('admin')``: ``/admin/...`` paths, ``admin/...``
        controllers, ``admin_...`` route names. """
        name = str(name)
        return self.scope(
            path=path or name,
            module=module or name,
            as_=as_ or name,
            shallow_path=path or name,
            shallow_prefix=as_ or name,
            **options)

    def controller(self, name, **options):
        return self.scope(controller=name, **options)

    def constraints(self, **segments):
        return self.scope(constraints=segments)

    def defaults(self, **values):
        return self.scope(defaults=values)

    def shallow(self):
        return self._push(shallow=True)

    # ------------------------------------------------------------
    # Concerns
    # ------------------------------------------------------------

    def concern(self, name, fn):
        """ Declare a reusable block of routes, ``fn(mapper, **options)``. """
        self._concerns[str(name)] = fn
        return fn

    def concerns(self, *names, **options):
        for name in names:
            if name not in self._concerns:
                raise ValueError(f"No concern named {name} was found!")
            self._concerns[name](self, **options)

    # ------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------

    def resources(self, *names, **options):
        """ Index, create, new, edit, show, update and destroy routes for
        each name. The result is a context manager nesting routes under the
        (last) resource. """
        nesting = None
        for name in names:
            nesting = self._resource(_Resource(name, options), options)
        return nesting

    def resource(self, *names, **options):
        """ Singular resource: a resource looked up without id. """
        nesting = None
        for name in names:
            nesting = self._resource(_Resource(name, options, singleton=True), options)
        return nesting

    def _resource(self, resource, options):
        extra = {k: options[k] for k in ('constraints', 'defaults') if options.get(k)}
        nest = self.scope_options['level'] == 'resource'

        def enter_scope():
            stack = contextlib.ExitStack()
            if nest:
                stack.enter_context(self.nested())
            stack.enter_context(self._resource_scope(resource, **extra))
            return stack

        with enter_scope():
            for concern in _as_list(options.get('concerns')):
                with self.nested():
                    self.concerns(concern)
            if resource.singleton:
                self._singleton_routes(resource)
            else:
                self._resources_routes(resource)
        return _Nesting(self, enter_scope)

    @contextlib.contextmanager
    def _resource_scope(self, resource, constraints=None, defaults=None):
        current = self.scope_options
        options = {'resource': resource, 'level': 'resource', 'controller': resource.controller}
        if constraints:
            options['constraints'] = dict(current['constraints'], **constraints)
        if defaults:
            options['defaults'] = dict(current['defaults'], **defaults)
        if resource.shallow:
            options['shallow'] = True
        with self._push(**options):
            yield

    def _resources_routes(self, resource):
        actions = resource.actions
        with self.collection():
            if 'index' in actions:
                self.get('', action='index', as_='')
            if 'create' in actions:
                self.post('', action='create', as_='' if 'index' not in actions else None)
        if 'new' in actions:
            with self.new():
                self.get('', action='new', as_='')
        with self.member():
            if 'edit' in actions:
                self.get(resource.path_names['edit'], action='edit', as_='edit')
            if 'show' in actions:
                self.get('', action='show', as_='')
            if 'update' in actions:
                name = '' if 'show' not in actions else None
                self.patch('', action='update', as_=name)
                self.put('', action='update', as_=None)
            if 'destroy' in actions:
                self.delete('', action='destroy', as_='' if not {'show', 'update'} & set(actions) else None)

    def _singleton_routes(self, resource):
        actions = resource.actions
        if 'new' in actions:
            with self.new():
                self.get('', action='new', as_='')
        with self.member():
            if 'edit' in actions:
                self.get(resource.path_names['edit'], action='edit', as_='edit')
            if 'show' in actions:
                self.get('', action='show', as_='')
            if 'create' in actions:
                self.post('', action='create', as_='' if 'show' not in actions else None)
            if 'update' in actions:
                self.patch('', action='update', as_=None)
                self.put('', action='update', as_=None)
            if 'destroy' in actions:
                self.delete('', action='destroy', as_=None)

    def _level_path_and_name(self, level):
        """ Path prefix and name parts of the routes added at ``level`` of
        the current resource. """
        scope = self.scope_options
        resource = scope['resource']
        shallow = scope['shallow'] and level == 'member' and not resource.singleton
        path = scope['shallow_path'] if shallow else scope['path']
        prefix = scope['shallow_prefix'] if shallow else scope['as']
        if level == 'collection':
            return _join_path(path, resource.path), _join_name(prefix, resource.collection_name)
        if level == 'new':
            return (_join_path(path, resource.path, resource.path_names['new']),
                    ('new', _join_name(prefix, resource.member_name)))
        if level == 'member':
            if resource.singleton:
                return _join_path(path, resource.path), _join_name(prefix, resource.member_name)
            return (_join_path(path, resource.path, ':' + resource.param),
                    _join_name(prefix, resource.member_name))
        # nested
        if resource.singleton:
            return _join_path(scope['path'], resource.path), _join_name(scope['as'], resource.member_name)
        return (_join_path(scope['path'], resource.path, ':' + resource.nested_param),
                _join_name(scope['as'], resource.member_name))

    def _level(self, level):
        resource = self.scope_options['resource']
        if resource is None or self.scope_options['level'] not in ('resource', level):
            raise ValueError(f"Can't use {level} outside resource(s) scope")
        return self._push(level=level)

    def member(self):
        return self._level('member')

    def collection(self):
        if self.scope_options['resource'] is not None and self.scope_options['resource'].singleton:
            raise ValueError("Can't use collection in a singular resource")
        return self._level('collection')

    def new(self):
        return self._level('new')

    @contextlib.contextmanager
    def nested(self):
        """ Scope of the routes nested under the current resource. """
        scope = self.scope_options
        resource = scope['resource']
        if resource is None:
            raise ValueError("Can't use nested outside resource(s) scope")
        path, name = self._level_path_and_name('nested')
        options = {'path': path, 'as': name, 'level': 'nested'}
        if resource.shallow:
            options['shallow'] = True
        with self._push(**options):
            yield self

    # ------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------

    def get(self, path, to=None, **options):
        return self.match(path, to, via='get', **options)

    def post(self, path, to=None, **options):
        return self.match(path, to, via='post', **options)

    def put(self, path, to=None, **options):
        return self.match(path, to, via='put', **options)

    def patch(self, path, to=None, **options):
        return self.match(path, to, via='patch', **options)

    def delete(self, path, to=None, **options):
        return self.match(path, to, via='delete', **options)

    def options(self, path, to=None, **options):
        return self.match(path, to, via='options', **options)

    def root(self, to=None, **options):
        options.setdefault('as_', 'root')
        return self.match('/', to, via='get', format=False, **options)

    def match(self, path, to=None, via=None, as_=False, controller=None, action=None,
              constraints=None, defaults=None, format=True, on=None, **routing):
        """ Add a route.

        :param path: path in segment notation, or a bare action name inside
            a resource or controller scope
        :param to: ``'controller#action'``, a :class:`Redirect` or a WSGI
            application
        :param via: verb or list of verbs, ``'all'`` for any
        :param as_: route name, ``None`` for no name, ``False`` to derive it
            from the path
        :param format: append an optional ``(.:format)`` segment
        :param on: ``'member'``, ``'collection'`` or ``'new'`` shortcut
        """
        if on:
            with self._level(on):
                return self.match(path, to, via, as_, controller, action, constraints, defaults, format, **routing)

        scope = self.scope_options
        via = _as_list(via or 'get')
        verbs = None if 'all' in via else [v.upper() for v in via]
        path = str(path)

        app = None
        if isinstance(to, str):
            if '#' in to:
                controller, action = to.split('#', 1)
                controller = controller or None
            else:
                controller = to
        elif to is not None:
            app = to

        level = scope['level']
        if level == 'resource':
            # bare routes in a resource block are nested
            with self.nested():
                return self.match(path, to, via, as_, controller, action, constraints, defaults, format, **routing)

        is_action_name = bool(re.match(r'^\w*$', path))
        if as_ is False:
            as_ = self._name_from_path(path) if not re.search(r'[:*]', path) else None
            implicit_name = True
        else:
            implicit_name = False

        if level in ('member', 'collection', 'new'):
            prefix, name_part = self._level_path_and_name(level)
            full_path = _join_path(prefix, path)
            if action is None and controller is None and app is None and is_action_name:
                action = path
            if as_ is None:
                name = None
            elif isinstance(name_part, tuple):  # new_...
                name = _join_name(as_, *name_part)
            else:
                name = _join_name(as_, name_part)
        else:
            full_path = _join_path(scope['path'], path)
            name = _join_name(scope['as'], as_) if as_ else None
            if action is None and controller is None and app is None and is_action_name and scope['controller']:
                action = path

        if app is None:
            controller = controller or scope['controller']
            if controller is None and action is None:
                parts = [p for p in path.strip('/').split('/') if p]
                if len(parts) == 2 and all(re.match(r'^\w+$', p) for p in parts):
                    controller, action = parts
            if controller is None:
                raise ValueError(f"Missing controller for route {full_path!r}")
            if action is None:
                raise ValueError(f"Missing action for route {full_path!r}")
            if isinstance(controller, str) and scope['module'] and not controller.startswith('/'):
                controller = f"{scope['module']}/{controller}"
            if isinstance(controller, str):
                controller = controller.lstrip('/')

        if format and app is None and not re.search(r'\*\w+|:format', full_path) and full_path != '/':
            full_path += '(.:format)'

        route = Route(
            full_path,
            verbs,
            controller=controller if app is None else None,
            action=action if app is None else None,
            name=name or None,
            defaults=dict(scope['defaults'], **(defaults or {})),
            constraints=dict(scope['constraints'], **(constraints or {})),
            routing=dict(scope['routing'], **routing),
            app=app,
        )
        return self.route_set.add_route(route, implicit_name=implicit_name)

    def _name_from_path(self, path):
        name = re.sub(r'\W+', '_', path.strip('/'))
        return name.strip('_') or None

    def mount(self, app, at, as_=None, via=None):
        """ Serve the WSGI application ``app`` under the ``at`` prefix. """
        scope = self.scope_options
        name = as_ or self._name_from_path(at)
        route = Route(
            _join_path(scope['path'], at),
            [v.upper() for v in _as_list(via)] or None,
            name=_join_name(scope['as'], name) if name else None,
            app=app,
            mount=True,
        )
        return self.route_set.add_route(route, implicit_name=as_ is None)

    def redirect(self, target, status=301):
        return Redirect(target, status)

    def direct(self, name, fn=None, **defaults):
        """ Custom url helper ``<name>_url`` / ``<name>_path``; ``fn`` gets
        the helper arguments and returns an URL, a path or url_for options. """
        def register(fn):
            self.route_set.add_direct(name, fn, defaults)
            return fn
        if fn is None:
            return register
        return register(fn)


class _Nesting:
    """ Returned by :meth:`Mapper.resources`: a context manager nesting
    the routes of its block under the resource. """
    def __init__(self, mapper, enter_scope):
        self.mapper = mapper
        self._enter_scope = enter_scope
        self._stack = None

    def __enter__(self):
        self._stack = self._enter_scope()
        return self.mapper

    def __exit__(self, *exc_info):
        return self._stack.__exit__(*exc_info)


# =========================================================
# Route set
# =========================================================

class RouteSet:
    """ The routing table of an application. """
    def __init__(self, default_url_options=None):
        self.routes = []
        self.named_routes = {}
        self.direct_helpers = {}
        self.default_url_options = dict(default_url_options or {})
        self._map = None
        self._lock = threading.RLock()

    def __iter__(self):
        return iter(self.routes)

    def __len__(self):
        return len(self.routes)

    def draw(self, fn):
        """ Run the route definitions of ``fn(mapper)``. Usable as a
        decorator. """
        fn(Mapper(self))
        self._map = None
        return fn

    def prepend(self, fn):
        routes = self.routes
        self.routes = []
        self.draw(fn)
        self.routes.extend(routes)
        return fn

    @synchronized()
    def add_route(self, route, implicit_name=False):
        if route.name:
            if route.name in self.named_routes:
                if implicit_name:
                    route.name = None
                else:
                    raise ValueError(
                        f"Invalid route name, already in use: {route.name!r}. "
                        "You may have defined two routes with the same name using the `as_` option.")
            else:
                self.named_routes[route.name] = route
        self.routes.append(route)
        self._map = None
        return route

    def add_direct(self, name, fn, defaults=None):
        if name in self.named_routes or name in self.direct_helpers:
            raise ValueError(f"Invalid route name, already in use: {name!r}")
        self.direct_helpers[name] = (fn, dict(defaults or {}))

    @synchronized()
    def clear(self):
        self.routes = []
        self.named_routes = {}
        self.direct_helpers = {}
        self._map = None

    @property
    def map(self):
        with self._lock:
            if self._map is None:
                converters = {'segment': SegmentConverter, 'glob': GlobConverter}
                rules = []
                for route in self.routes:
                    rules.extend(route.rules(converters))
                self._map = Map(
                    rules,
                    converters=converters,
                    strict_slashes=False,
                    merge_slashes=False,
                    redirect_defaults=False,
                )
            return self._map

    # ------------------------------------------------------------
    # Recognition
    # ------------------------------------------------------------

    def match(self, environ):
        """ Match the request of ``environ``.

        :returns: ``(route, path_params)``
        :raises RoutingError: when no route matches the path
        :raises werkzeug.exceptions.MethodNotAllowed: when routes match the
            path but not the verb
        """
        path = environ.get('PATH_INFO') or '/'
        method = environ.get('REQUEST_METHOD', 'GET').upper()
        adapter = self.map.bind_to_environ(environ)
        stripped = path.rstrip('/') or '/'
        try:
            route, params = adapter.match(stripped, method=method, return_rule=False)
        except NotFound:
            raise RoutingError(f'No route matches [{method}] "{path}"') from None
        except MethodNotAllowed:
            _logger.debug("Verb %s not allowed for %s", method, path)
            raise
        return route, params

    def recognize_path(self, path, method='GET'):
        """ Parameters the route matching ``path`` would receive. """
        adapter = self.map.bind('localhost')
        try:
            route, params = adapter.match((path.rstrip('/') or '/'), method=method.upper())
        except (NotFound, MethodNotAllowed):
            raise RoutingError(f'No route matches "{path}"') from None
        result = dict(route.defaults)
        if route.app is None:
            result.update(controller=route.controller_path, action=route.action)
        result.update(params)
        return result

    # ------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------

    def _adapter(self, environ=None, options=None):
        options = dict(self.default_url_options, **(options or {}))
        if environ is not None and not options.get('host'):
            return self.map.bind_to_environ(environ)
        host = options.get('host') or 'localhost'
        if options.get('port'):
            host = f"{host}:{options['port']}"
        return self.map.bind(
            host,
            script_name=options.get('script_name') or '/',
            url_scheme=(options.get('protocol') or 'http').split(':')[0],
        )

    @staticmethod
    def _to_param(value):
        to_param = getattr(value, 'to_param', None)
        if callable(to_param):
            return to_param()
        if isinstance(value, bool):
            return str(value).lower()
        return value

    def generate(self, route, args=(), params=None, environ=None, external=False, anchor=None, **url_options):
        """ URL of ``route`` with the positional ``args`` filling the
        required segments in order. """
        values = {}
        required = [p for p in route.required_parts if p != 'format']
        if len(args) > len(required):
            raise UrlGenerationError(
                f"No route matches {route.name or route.requirements}, too many positional arguments {args!r}")
        for name, value in zip(required, args):
            values[name] = value
        for key, value in (params or {}).items():
            if value is not None:
                values[key] = value
        values = {
            k: [self._to_param(i) for i in v] if isinstance(v, (list, tuple)) and k not in route.parts
            else self._to_param(v)
            for k, v in values.items()
        }
        if route.mount:
            values.pop('mount_path', None)

        missing = [p for p in route.required_parts if p not in values]
        if missing:
            raise UrlGenerationError(
                f"No route matches {route.name or route.requirements}, missing required keys: {missing}")

        adapter = self._adapter(environ, url_options)
        try:
            url = adapter.build(route, values, force_external=external, append_unknown=True)
        except BuildError as e:
            raise UrlGenerationError(f"No route matches {route.name or route.requirements}: {e}") from None
        if anchor:
            url += '#' + quote(str(anchor), safe='')
        return url

    def url_for(self, name_or_options, *args, _environ=None, _external=True, _anchor=None, **params):
        """ URL of the named route ``name_or_options``, or of the route
        matching ``{'controller': ..., 'action': ...}`` options. """
        url_options = {k[1:]: params.pop(k) for k in list(params) if k in ('_host', '_protocol', '_port', '_script_name')}
        if isinstance(name_or_options, dict):
            options = dict(name_or_options, **params)
            controller = options.pop('controller', None)
            action = options.pop('action', 'index')
            for route in self.routes:
                if route.app is not None or route.controller_path != controller or route.action != action:
                    continue
                try:
                    return self.generate(route, args, options, _environ, _external, _anchor, **url_options)
                except UrlGenerationError:
                    continue
            raise UrlGenerationError(f"No route matches {dict(name_or_options, **params)!r}")

        name = str(name_or_options)
        if name in self.direct_helpers:
            fn, defaults = self.direct_helpers[name]
            result = fn(*args, **dict(defaults, **params))
            if isinstance(result, dict):
                return self.url_for(result, _environ=_environ, _external=_external, _anchor=_anchor)
            return result
        route = self.named_routes.get(name)
        if route is None:
            raise UrlGenerationError(f"Undefined route name {name!r}")
        return self.generate(route, args, params, _environ, _external, _anchor, **url_options)

    def path_for(self, name_or_options, *args, **params):
        return self.url_for(name_or_options, *args, _external=False, **params)

    def url_helpers(self, environ=None):
        return UrlHelpers(self, environ)


class UrlHelpers:
    """ ``<name>_path`` and ``<name>_url`` functions of the named routes::

        helpers = app.routes.url_helpers()
        helpers.photo_path(photo)             # "/photos/1"
        helpers.photos_url(page=2)            # "http://localhost/photos?page=2"
    """
    def __init__(self, route_set, environ=None):
        self._route_set = route_set
        self._environ = environ

    def __getattr__(self, attr):
        for suffix, external in (('_path', False), ('_url', True)):
            if attr.endswith(suffix):
                name = attr[:-len(suffix)]
                if name in self._route_set.named_routes or name in self._route_set.direct_helpers:
                    def helper(*args, **params):
                        return self._route_set.url_for(
                            name, *args, _environ=self._environ, _external=external, **params)
                    helper.__name__ = attr
                    return helper
        raise AttributeError(attr)

    def __dir__(self):
        names = list(self._route_set.named_routes) + list(self._route_set.direct_helpers)
        return [f'{n}{s}' for n in names for s in ('_path', '_url')]

    def url_for(self, name_or_options, *args, **params):
        params.setdefault('_external', False)
        return self._route_set.url_for(name_or_options, *args, _environ=self._environ, **params)


# =========================================================
# Inspector
# =========================================================

class RoutesInspector:
    """ Routes table as printed by ``plinth routes``. """
    HEADER = ('Prefix', 'Verb', 'URI Pattern', 'Controller#Action')

    def __init__(self, routes):
        self.routes = list(routes)

    def rows(self, controller=None, grep=None):
        rows = []
        for route in self.routes:
            row = (route.name or '', route.verb, route.path, route.requirements)
            if controller and not (route.controller_path or '').startswith(controller.strip('/')):
                continue
            if grep and not any(grep in str(col) for col in row):
                continue
            rows.append(row)
        return rows

    def format(self, controller=None, grep=None):
        rows = self.rows(controller, grep)
        if not rows:
            if controller or grep:
                return "No routes were found for this grep pattern."
            return "You don't have any routes defined!"
        table = [self.HEADER, *rows]
        widths = [max(len(row[i]) for row in table) for i in range(3)]
        return '\n'.join(
            f'{name.rjust(widths[0])} {verb.ljust(widths[1])} {path.ljust(widths[2])} {reqs}'.rstrip()
            for name, verb, path, reqs in table
        )
