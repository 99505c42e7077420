# Part of Plinth, see License file for full copyright and licensing details.
"""
Strong parameters.

Request parameters are wrapped in :class:`Parameters`, a mapping which
cannot be handed to mass-assignment code until its keys have been
explicitly whitelisted::

    params.require('person').permit('name', 'age', {'tags': []}, {'address': ['city']})

:func:`parse_nested_query` builds the nested structure out of the bracket
notation used by HTML forms (``person[address][city]=Paris``).
"""
import copy
import datetime
import decimal
import io
import logging
import re
from collections.abc import Mapping

from werkzeug.datastructures import FileStorage

from .exceptions import (
    ParameterMissing,
    UnfilteredParameters,
    UnpermittedParameters,
    UserError,
)
from .tools import config

_logger = logging.getLogger(__name__)

__all__ = ['ParameterTypeError', 'Parameters', 'parse_nested_query']

PERMITTED_SCALAR_TYPES = (
    str,
    type(None),
    int,
    float,
    decimal.Decimal,
    datetime.date,
    datetime.time,
    io.IOBase,
    FileStorage,
)

def _is_scalar(value):
    # bool is an int
    return isinstance(value, PERMITTED_SCALAR_TYPES)

def _is_blank(value):
    if value is False or value == 0 and not isinstance(value, str):
        return False
    if isinstance(value, str):
        return not value.strip()
    return not value


class Parameters(Mapping):
    always_permitted_parameters = ('controller', 'action', 'format')
    # None: read `action_on_unpermitted_parameters` from the configuration
    action_on_unpermitted_parameters = None

    def __init__(self, params=None, permitted=False):
        self._params = {}
        self.permitted = permitted
        for key, value in dict(params or {}).items():
            self._params[str(key)] = self._convert(value)

    def _convert(self, value):
        if isinstance(value, Parameters):
            return value
        if isinstance(value, Mapping):
            return type(self)(value, permitted=self.permitted)
        if isinstance(value, (list, tuple)):
            return [self._convert(v) for v in value]
        return value

    # ------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------

    def __getitem__(self, key):
        return self._params[str(key)]

    def __setitem__(self, key, value):
        self._params[str(key)] = self._convert(value)

    def __iter__(self):
        return iter(self._params)

    def __len__(self):
        return len(self._params)

    def __contains__(self, key):
        return str(key) in self._params

    def __eq__(self, other):
        if isinstance(other, Parameters):
            return self.permitted == other.permitted and self._params == other._params
        if isinstance(other, Mapping):
            return self.to_unsafe_dict() == dict(other)
        return NotImplemented

    __hash__ = None

    def __repr__(self):
        return f'<{type(self).__name__} {self._params!r} permitted: {self.permitted}>'

    def fetch(self, key, *default):
        """ Value of ``key``; a missing key gives ``default`` (called when
        callable) or raises :class:`ParameterMissing`. """
        key = str(key)
        if key in self._params:
            return self._params[key]
        if default:
            value = default[0]
            return self._convert(value(key) if callable(value) else value)
        raise ParameterMissing(key, list(self._params))

    def dig(self, *keys):
        value = self
        for key in keys:
            try:
                value = value[key]
            except (KeyError, IndexError, TypeError):
                return None
        return value

    # ------------------------------------------------------------
    # Whitelisting
    # ------------------------------------------------------------

    def require(self, key):
        """ Value of ``key`` which must be present and not blank; a list of
        keys gives the list of their values. """
        if isinstance(key, (list, tuple)):
            return [self.require(k) for k in key]
        value = self._params.get(str(key))
        if value is None or _is_blank(value):
            raise ParameterMissing(str(key), list(self._params))
        return value

    def permit_all(self):
        """ Mark these parameters, and all the nested ones, as permitted. """
        for value in self._params.values():
            for item in (value if isinstance(value, list) else [value]):
                if isinstance(item, Parameters):
                    item.permit_all()
        self.permitted = True
        return self

    def permit(self, *filters):
        """ New permitted :class:`Parameters` holding only the keys matched
        by ``filters``.

        A filter is a key name (scalar values only) or a dict mapping a key
        to ``[]`` (list of scalars), ``{}`` (any nested hash), a list of
        filters (nested hash, or list of nested hashes) or ``[[filters]]``
        (list of nested hashes only).
        """
        params = type(self)()
        for filter_ in filters:
            if isinstance(filter_, (str, int)):
                self._permit_scalar(params, str(filter_))
            elif isinstance(filter_, Mapping):
                self._permit_hash(params, filter_)
            elif isinstance(filter_, (list, tuple)):
                params._params.update(self.permit(*filter_)._params)
            else:
                raise TypeError(f"Unsupported filter {filter_!r}")
        self._unpermitted_parameters(params)
        params.permitted = True
        return params

    def _permit_scalar(self, params, key):
        if key in self._params and _is_scalar(self._params[key]):
            params._params[key] = self._params[key]
        # multi-parameter attributes, e.g. "date(1i)"
        for name, value in self._params.items():
            m = re.match(r'^(.*)\(\d+[if]?\)$', name)
            if m and m.group(1) == key and _is_scalar(value):
                params._params[name] = value

    def _permit_hash(self, params, filter_):
        for key, rule in filter_.items():
            key = str(key)
            value = self._params.get(key)
            if value is None:
                continue
            result = self._permit_value(value, rule)
            if result is not None:
                params._params[key] = result

    def _permit_value(self, value, rule):
        if rule == [] and isinstance(rule, list):
            if isinstance(value, list) and all(_is_scalar(v) for v in value):
                return list(value)
            return None
        if rule == {} and isinstance(rule, dict):
            return self._permit_any(value) if isinstance(value, Parameters) else None
        rules = rule if isinstance(rule, (list, tuple)) else [rule]
        if len(rules) == 1 and isinstance(rules[0], (list, tuple)):
            return self._permit_array_of_hashes(value, rules[0])
        if isinstance(value, list):
            return self._permit_array_of_hashes(value, rules)
        if isinstance(value, Parameters):
            if value and all(k.lstrip('-').isdigit() for k in value):
                # fields_for style: {'0': {...}, '1': {...}}
                return type(self)({
                    k: v.permit(*rules) for k, v in value.items() if isinstance(v, Parameters)
                }, permitted=True)
            return value.permit(*rules)
        return None

    def _permit_array_of_hashes(self, value, rules):
        if not isinstance(value, list):
            return None
        return [v.permit(*rules) for v in value if isinstance(v, Parameters)]

    def _permit_any(self, value):
        sanitized = type(self)(permitted=True)
        for key, item in value.items():
            if _is_scalar(item):
                sanitized._params[key] = item
            elif isinstance(item, Parameters):
                sanitized._params[key] = self._permit_any(item)
            elif isinstance(item, list):
                sanitized._params[key] = [
                    self._permit_any(v) if isinstance(v, Parameters) else v
                    for v in item if _is_scalar(v) or isinstance(v, Parameters)
                ]
        return sanitized

    def _unpermitted_parameters(self, params):
        action = self.action_on_unpermitted_parameters
        if action is None:
            action = config.get('action_on_unpermitted_parameters', 'log')
        if not action or action == 'false':
            return
        keys = [
            key for key in self._params
            if key not in params._params and key not in self.always_permitted_parameters
        ]
        if not keys:
            return
        if action == 'raise':
            raise UnpermittedParameters(keys)
        _logger.warning("Unpermitted parameters: %s", ', '.join(keys))

    # ------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------

    def to_dict(self):
        """ Plain ``dict`` copy; only permitted parameters can be converted. """
        if not self.permitted:
            raise UnfilteredParameters()
        return self.to_unsafe_dict()

    def to_unsafe_dict(self):
        def convert(value):
            if isinstance(value, Parameters):
                return {k: convert(v) for k, v in value._params.items()}
            if isinstance(value, list):
                return [convert(v) for v in value]
            return value
        return convert(self)

    def copy(self):
        return copy.deepcopy(self)

    def _new(self, params):
        new = type(self)(permitted=self.permitted)
        new._params = params
        return new

    def slice(self, *keys):
        keys = [str(k) for k in keys]
        return self._new({k: self._params[k] for k in keys if k in self._params})

    def except_(self, *keys):
        keys = {str(k) for k in keys}
        return self._new({k: v for k, v in self._params.items() if k not in keys})

    def extract(self, *keys):
        """ Remove ``keys`` from these parameters and return them. """
        extracted = self.slice(*keys)
        for key in extracted:
            del self._params[key]
        return extracted

    def merge(self, other):
        new = self._new(dict(self._params))
        for key, value in dict(other).items():
            new[key] = value
        return new

    def delete(self, key, default=None):
        return self._params.pop(str(key), default)

    def reverse_merge(self, other):
        new = self._new({})
        for key, value in dict(other).items():
            new[key] = value
        new._params.update(self._params)
        return new


# ------------------------------------------------------------
# Nested query
# ------------------------------------------------------------

class ParameterTypeError(UserError):
    """ Conflicting types in a nested query, e.g. ``a=1&a[b]=2``. """


_NAME_RE = re.compile(r'^[\[\]]*([^\[\]]+)\]*')
_ARRAY_CHILD_RE = (re.compile(r'^\[\]\[([^\[\]]+)\]$'), re.compile(r'^\[\](.+)$'))

def parse_nested_query(pairs, depth_limit=100):
    """ Build nested dicts and lists out of ``(name, value)`` pairs using
    the bracket notation:

    >>> parse_nested_query([('a[b]', '1'), ('c[]', '2'), ('c[]', '3')])
    {'a': {'b': '1'}, 'c': ['2', '3']}
    """
    params = {}
    for name, value in pairs:
        _normalize_params(params, name, value, depth_limit)
    return params

def _has_key(params, key):
    if '[]' in key:
        return False
    for part in (p for p in re.split(r'[\[\]]+', key) if p):
        if not isinstance(params, dict) or part not in params:
            return False
        params = params[part]
    return True

def _normalize_params(params, name, value, depth):
    if depth <= 0:
        raise ParameterTypeError("parameters nested too deeply")

    m = _NAME_RE.match(name)
    key = m.group(1) if m else ''
    after = name[m.end():] if m else ''
    if not key:
        return params

    if after == '':
        params[key] = value
    elif after == '[':
        params[name] = value
    elif after == '[]':
        items = params.setdefault(key, [])
        if not isinstance(items, list):
            raise ParameterTypeError(f"expected list (got {type(items).__name__}) for param `{key}'")
        items.append(value)
    elif any(r.match(after) for r in _ARRAY_CHILD_RE):
        child_key = next(r.match(after) for r in _ARRAY_CHILD_RE if r.match(after)).group(1)
        items = params.setdefault(key, [])
        if not isinstance(items, list):
            raise ParameterTypeError(f"expected list (got {type(items).__name__}) for param `{key}'")
        if items and isinstance(items[-1], dict) and not _has_key(items[-1], child_key):
            _normalize_params(items[-1], child_key, value, depth - 1)
        else:
            items.append(_normalize_params({}, child_key, value, depth - 1))
    else:
        child = params.setdefault(key, {})
        if not isinstance(child, dict):
            raise ParameterTypeError(f"expected dict (got {type(child).__name__}) for param `{key}'")
        params[key] = _normalize_params(child, after, value, depth - 1)
    return params
