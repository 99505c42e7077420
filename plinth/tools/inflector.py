# Part of Plinth, see License file for full copyright and licensing details.
"""
English inflections used to derive resource, controller and route names.
"""
import re
import unicodedata

__all__ = [
    'camelize',
    'humanize',
    'parameterize',
    'pluralize',
    'singularize',
    'titleize',
    'underscore',
]

PLURALS = [
    (r'$', 's'),
    (r's$', 's'),
    (r'^(ax|test)is$', r'\1es'),
    (r'(octop|vir)us$', r'\1i'),
    (r'(octop|vir)i$', r'\1i'),
    (r'(alias|status)$', r'\1es'),
    (r'(bu)s$', r'\1ses'),
    (r'(buffal|tomat)o$', r'\1oes'),
    (r'([ti])um$', r'\1a'),
    (r'([ti])a$', r'\1a'),
    (r'sis$', 'ses'),
    (r'(?:([^f])fe|([lr])f)$', r'\1\2ves'),
    (r'(hive)$', r'\1s'),
    (r'([^aeiouy]|qu)y$', r'\1ies'),
    (r'(x|ch|ss|sh)$', r'\1es'),
    (r'(matr|vert|ind)(?:ix|ex)$', r'\1ices'),
    (r'^(m|l)ouse$', r'\1ice'),
    (r'^(m|l)ice$', r'\1ice'),
    (r'^(ox)$', r'\1en'),
    (r'^(oxen)$', r'\1'),
    (r'(quiz)$', r'\1zes'),
]

SINGULARS = [
    (r's$', ''),
    (r'(ss)$', r'\1'),
    (r'(n)ews$', r'\1ews'),
    (r'([ti])a$', r'\1um'),
    (r'((a)naly|(b)a|(d)iagno|(p)arenthe|(p)rogno|(s)ynop|(t)he)(sis|ses)$', r'\1sis'),
    (r'(^analy)(sis|ses)$', r'\1sis'),
    (r'([^f])ves$', r'\1fe'),
    (r'(hive)s$', r'\1'),
    (r'(tive)s$', r'\1'),
    (r'([lr])ves$', r'\1f'),
    (r'([^aeiouy]|qu)ies$', r'\1y'),
    (r'(s)eries$', r'\1eries'),
    (r'(m)ovies$', r'\1ovie'),
    (r'(x|ch|ss|sh)es$', r'\1'),
    (r'^(m|l)ice$', r'\1ouse'),
    (r'(bus)(es)?$', r'\1'),
    (r'(o)es$', r'\1'),
    (r'(shoe)s$', r'\1'),
    (r'(cris|test)(is|es)$', r'\1is'),
    (r'^(a)x[ie]s$', r'\1xis'),
    (r'(octop|vir)(us|i)$', r'\1us'),
    (r'(alias|status)(es)?$', r'\1'),
    (r'^(ox)en', r'\1'),
    (r'(vert|ind)ices$', r'\1ex'),
    (r'(matr)ices$', r'\1ix'),
    (r'(quiz)zes$', r'\1'),
    (r'(database)s$', r'\1'),
]

IRREGULARS = {
    'person': 'people',
    'man': 'men',
    'child': 'children',
    'sex': 'sexes',
    'move': 'moves',
    'zombie': 'zombies',
}

UNCOUNTABLES = {
    'equipment', 'information', 'rice', 'money', 'species', 'series',
    'fish', 'sheep', 'jeans', 'police',
}

# last declared rule wins
_PLURALS = [(re.compile(rule, re.IGNORECASE), repl) for rule, repl in reversed(PLURALS)]
_SINGULARS = [(re.compile(rule, re.IGNORECASE), repl) for rule, repl in reversed(SINGULARS)]


def _apply(word, rules, irregulars):
    if not word or word.lower() in UNCOUNTABLES:
        return word
    # irregular words are matched on the last word of compounds
    m = re.search(r'(?:^|[_\s-])([A-Za-z]+)$', word)
    last = m.group(1) if m else word
    if last.lower() in irregulars.values():
        return word
    if last.lower() in irregulars:
        repl = irregulars[last.lower()]
        if last[0].isupper():
            repl = repl[0].upper() + repl[1:]
        return word[:len(word) - len(last)] + repl
    for rule, repl in rules:
        if rule.search(word):
            return rule.sub(repl, word, count=1)
    return word

def pluralize(word, count=None):
    """ Plural form of ``word``; ``count == 1`` keeps the singular. """
    if count == 1:
        return word
    return _apply(word, _PLURALS, IRREGULARS)

def singularize(word):
    return _apply(word, _SINGULARS, {v: k for k, v in IRREGULARS.items()})

def camelize(term, uppercase_first_letter=True):
    """ ``'admin/photo_albums'`` -> ``'Admin.PhotoAlbums'`` """
    result = re.sub(r'(?:_|^)([a-z\d]*)', lambda m: m.group(1).capitalize(), term)
    result = re.sub(r'/(.?)', lambda m: '.' + m.group(1).upper(), result)
    if not uppercase_first_letter and result:
        result = result[0].lower() + result[1:]
    return result

def underscore(word):
    """ ``'Admin.PhotoAlbums'`` -> ``'admin/photo_albums'`` """
    word = word.replace('.', '/').replace('::', '/')
    word = re.sub(r'([A-Z\d]+)([A-Z][a-z])', r'\1_\2', word)
    word = re.sub(r'([a-z\d])([A-Z])', r'\1_\2', word)
    return word.replace('-', '_').lower()

def humanize(word, capitalize=True):
    result = re.sub(r'_id$', '', word).replace('_', ' ').strip()
    if capitalize and result:
        result = result[0].upper() + result[1:]
    return result

def titleize(word):
    return re.sub(r'\b([a-z])', lambda m: m.group(1).upper(), humanize(underscore(word)).lower())

def parameterize(string, separator='-'):
    """ URL-friendly version of ``string``: ASCII, lowercase, words joined
    by ``separator``. """
    value = unicodedata.normalize('NFKD', string).encode('ascii', 'ignore').decode('ascii')
    value = re.sub(r'[^a-z0-9\-_]+', separator, value.lower())
    if separator:
        sep = re.escape(separator)
        value = re.sub(f'{sep}{{2,}}', separator, value)
        value = re.sub(f'^{sep}|{sep}$', '', value)
    return value
