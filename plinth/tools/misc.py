# Part of Plinth, see License file for full copyright and licensing details.
"""
Miscellaneous tools used by Plinth.
"""
from __future__ import annotations

import hmac as hmac_lib
import logging
import typing

from collections.abc import Iterable, Iterator, Mapping

K = typing.TypeVar('K')
T = typing.TypeVar('T')

__all__ = [
    'unique',
    'submap',
    'consteq',
    'DotDict',
    'str2bool',
]

_logger = logging.getLogger(__name__)


#----------------------------------------------------------
# iterables
#----------------------------------------------------------
def unique(it: Iterable[T]) -> Iterator[T]:
    """ "Uniquifier" for the provided iterable: will output each element of
    the iterable once.

    The iterable's elements must be hashahble.

    :param Iterable it:
    :rtype: Iterator
    """
    seen = set()
    for e in it:
        if e not in seen:
            seen.add(e)
            yield e

def submap(mapping: Mapping[K, T], keys: Iterable[K]) -> Mapping[K, T]:
    """
    Get a filtered copy of the mapping where only some keys are present.

    :param Mapping mapping: the original dict-like structure to filter
    :param Iterable keys: the list of keys to keep
    :return dict: a filtered dict copy of the original mapping
    """
    keys = frozenset(keys)
    return {key: mapping[key] for key in mapping if key in keys}

class DotDict(dict):
    """Helper for dot.notation access to dictionary attributes

        E.g.
          foo = DotDict({'bar': False})
          return foo.bar
    """
    def __getattr__(self, attrib):
        val = self.get(attrib)
        return DotDict(val) if isinstance(val, dict) else val

consteq = hmac_lib.compare_digest

def str2bool(s: str, default: bool | None = None) -> bool:
    s = str(s).strip().lower()
    if s in ('y', 'yes', '1', 'true', 't', 'on'):
        return True
    if s in ('n', 'no', '0', 'false', 'f', 'off', ''):
        return False
    if default is None:
        raise ValueError('Use 0/1/yes/no/true/false/on/off')
    return bool(default)
