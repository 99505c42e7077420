# Part of Plinth, see License file for full copyright and licensing details.
"""
Template helpers.

Every public function of the helper modules is a global of the templates;
:data:`FILTERS` holds the ones also usable as filters
(``{{ post.body|truncate(80) }}``).
"""
from . import asset, csp, date, form_tag, number, tag, text, url

HELPER_MODULES = [tag, url, form_tag, asset, csp, number, date, text]

HELPERS = {
    name: getattr(module, name)
    for module in HELPER_MODULES
    for name in module.__all__
}

FILTERS = {
    name: HELPERS[name]
    for name in [
        'escape_once',
        'excerpt',
        'highlight',
        'number_to_currency',
        'number_to_human',
        'number_to_human_size',
        'number_to_percentage',
        'number_to_phone',
        'number_with_delimiter',
        'number_with_precision',
        'simple_format',
        'time_ago_in_words',
        'truncate',
        'word_wrap',
    ]
}
