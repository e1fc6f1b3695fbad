# (c) Copyright 2022 Aaron Kimball
#
# Reading and writing the python-literal files used for the debugger config and
# for kernel dumps.

from chibios_dbg.term import MsgLevel

DBG_CONF_FMT_VERSION = 1


def _warn(print_q, msg):
    if print_q is None:
        print(msg)
        return
    print_q.put((msg, MsgLevel.WARN))


def load_config_file(print_q, filename, map_name='config', defaults=None):
    """
        Load the dict named `map_name` from a file written by persist_config_file().

        The file is python source; it's run with an empty namespace and must leave behind
        `formatversion` (an int no newer than DBG_CONF_FMT_VERSION) and `map_name` (a dict).
        Entries in `defaults` fill in for anything the file does not set. A file that
        can't be run, or has the wrong shape or version, is reported on print_q and
        yields only the defaults.

        TODO(aaron): Swap exec() for ast.literal_eval() so files can't run arbitrary code.
    """
    result = dict(defaults or {})

    with open(filename, "r") as f:
        source = f.read()

    namespace = {map_name: {}}
    try:
        exec(source, namespace, namespace)
    except Exception as e:
        _warn(print_q, f"Warning: could not parse '{filename}': {e}")
        return result

    version = namespace.get('formatversion')
    contents = namespace.get(map_name)
    if not isinstance(version, int) or version > DBG_CONF_FMT_VERSION:
        _warn(print_q, f"Error: '{filename}' has unsupported format version {version}")
    elif not isinstance(contents, dict):
        _warn(print_q, f"Error: '{map_name}' in '{filename}' is not a dict")
    else:
        result.update(contents)

    return result


def _literal(v, depth):
    """
        Render v as python source. Containers are nested one level deeper per `depth`.
    """
    if v is None or isinstance(v, (str, int, float, bool)):
        return repr(v)
    elif isinstance(v, (bytes, bytearray)):
        return repr(bytes(v))
    elif isinstance(v, (list, tuple)):
        return '[' + ''.join([_literal(elem, depth) + ', ' for elem in v]) + ']'
    elif isinstance(v, dict):
        inner = '  ' * (depth + 1)
        # Dict keys may be ints (e.g. memory addresses) as well as strings.
        entries = [f'{inner}{_literal(dk, depth + 1)}: {_literal(dv, depth + 1)},\n'
                   for (dk, dv) in v.items()]
        return '{\n' + ''.join(entries) + ('  ' * depth) + '}'

    raise TypeError(f"Cannot serialize value of type '{type(v)}'")


def persist_config_file(filename, map_name, data):
    """
        Save the dict `data` to filename as `map_name`, readable by load_config_file().
    """
    # Rendered first; a TypeError leaves any existing file untouched.
    body = ''.join([f'  {repr(k)}: {_literal(v, 1)},\n' for (k, v) in data.items()])

    with open(filename, "w") as f:
        f.write(f"formatversion = {DBG_CONF_FMT_VERSION}\n")
        f.write(f"{map_name} = {{\n\n")
        f.write(body)
        f.write("\n}\n")
