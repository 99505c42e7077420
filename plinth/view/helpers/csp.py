# Part of Plinth, see License file for full copyright and licensing details.
from markupsafe import Markup

from .. import current_view
from .tag import cdata_section, content_tag, tag

__all__ = [
    'csp_meta_tag',
    'javascript_tag',
]


def _nonce():
    view = current_view()
    return view.content_security_policy_nonce() if view is not None else None


def csp_meta_tag(**options):
    """ ``<meta name="csp-nonce" content="..." />``, for the scripts
    adding inline tags; empty when there is no nonce. """
    nonce = _nonce()
    if not nonce:
        return Markup('')
    options.update(name='csp-nonce', content=nonce)
    return tag('meta', options)


def javascript_tag(content=None, caller=None, nonce=False, cdata=False, **attrs):
    """
    An inline ``<script>``, usable with a ``{% call %}`` block.

    :param nonce: ``True`` adds the content security policy nonce of the
        request
    :param cdata: wrap the content in a commented CDATA section
    """
    if caller is not None:
        content = caller()
    content = Markup(content or '')
    if cdata:
        content = Markup('\n//') + cdata_section(Markup('\n') + content + Markup('\n//')) + Markup('\n')
    if nonce is True:
        nonce = _nonce()
    if nonce:
        attrs['nonce'] = nonce
    return content_tag('script', content, attrs, escape=False)
