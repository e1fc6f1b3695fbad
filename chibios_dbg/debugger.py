# (c) Copyright 2022 Aaron Kimball

import os
import os.path

import chibios_dbg.kernel as kernel
import chibios_dbg.serialize as serialize
import chibios_dbg.term as term
from chibios_dbg.term import MsgLevel

_LOCAL_CONF_FILENAME = os.path.expanduser("~/.chibios_dbg.conf")
_DEFAULT_HISTORY_FILENAME = os.path.expanduser("~/.chibios_dbg_history")

_dbg_conf_keys = [
    "dbg.colors",
    "dbg.conf.formatversion",
    "dbg.historyfile",
    "dbg.verbose",
    "dump.ram_end",      # If both dump.ram_* are set, `dump` also captures this RAM window.
    "dump.ram_start",
]


def _silent(*args):
    """
        verboseprint() when dbg.verbose is off.
    """
    pass


class DebuggerError(Exception):
    """
    Base class for errors in the debugger session itself (as opposed to the target).
    """
    pass


class NoTargetError(DebuggerError):
    """ No debug backend is attached to the session. """
    pass


class Debugger(object):
    """
        A debugging session.

        Holds the user configuration, the message queue to the console, and the
        DebugProxy through which the kernel objects on the target are read.
    """

    def __init__(self, proxy, print_q, force_config=None, history_change_hook=None,
                 elf_name=None):
        """
        @param proxy the DebugProxy to read the target through (None if not attached yet)
        @param print_q queue of (text, MsgLevel) pairs for the console
        @param force_config if not None, the configuration to use instead of the user's
            config file. Changes made during the session are then not saved.
        @param history_change_hook called with the readline history filename whenever
            it changes.
        @param elf_name the firmware ELF image of the target, if known.
        """
        self._print_q = print_q
        self._history_change_hook = history_change_hook
        self._proxy = proxy
        self.elf_name = os.path.realpath(elf_name) if elf_name else None

        self.verboseprint = _silent  # Swapped by _apply_output_settings().

        self._save_conf_changes = force_config is None
        self._load_config(force_config)

        self._kernel = kernel.KernelObjects(self)

    def msg_q(self, color, *args):
        """
        Put a message on the console print queue.

        @param color a MsgLevel
        @param args concatenated to form the message; non-strings are repr()'d.
        """
        parts = [a if isinstance(a, str) else repr(a) for a in args]
        self._print_q.put(("".join(parts), color))

    def get_print_q(self):
        return self._print_q

    def get_proxy(self):
        """
        Return the DebugProxy attached to this session.
        """
        if self._proxy is None:
            raise NoTargetError("No target attached; load a dump or run inside gdb")
        return self._proxy

    def has_proxy(self):
        return self._proxy is not None

    def set_proxy(self, proxy):
        """
        Replace the attached DebugProxy; the old one is closed.
        """
        if self._proxy is not None and self._proxy is not proxy:
            self._proxy.close()
        self._proxy = proxy

    def kernel(self):
        """
        Return the KernelObjects reader bound to this session.
        """
        return self._kernel

    def close(self):
        if self._proxy is not None:
            self._proxy.close()
            self._proxy = None

    ###### Configuration

    def _default_config(self):
        conf = dict.fromkeys(_dbg_conf_keys)
        conf.update({
            "dbg.colors": True,
            "dbg.conf.formatversion": serialize.DBG_CONF_FMT_VERSION,
            "dbg.historyfile": _DEFAULT_HISTORY_FILENAME,
            "dbg.verbose": False,
        })
        return conf

    def _load_config(self, force_config=None):
        """
        Build self._config from the defaults overlaid with either force_config or the
        user's config file (_LOCAL_CONF_FILENAME), if it exists.
        """
        conf = self._default_config()
        if force_config is not None:
            conf.update(force_config)
            source = "programmatic configuration"
        elif os.path.exists(_LOCAL_CONF_FILENAME):
            conf = serialize.load_config_file(self._print_q, _LOCAL_CONF_FILENAME, 'config', conf)
            source = _LOCAL_CONF_FILENAME
        else:
            source = "defaults"

        # Keys the file may hold from other versions are dropped.
        self._config = dict([(k, conf.get(k)) for k in _dbg_conf_keys])

        self._apply_output_settings()
        self._apply_history_setting()
        self.verboseprint("Loaded config from ", source, ": ", self._config)

    def _save_config(self):
        if not self._save_conf_changes:
            return

        saved = dict(self._config)
        saved["dbg.conf.formatversion"] = serialize.DBG_CONF_FMT_VERSION
        serialize.persist_config_file(_LOCAL_CONF_FILENAME, 'config', saved)

    @staticmethod
    def _require_key(key):
        if key not in _dbg_conf_keys:
            raise KeyError(f"Not a valid conf key: {key}")

    def set_conf(self, key, val):
        """
        Change a config setting, apply its side effects, and save the config.
        Raises KeyError for an unknown key.
        """
        Debugger._require_key(key)
        self._config[key] = val

        on_change = {
            "dbg.colors": self._apply_output_settings,
            "dbg.verbose": self._apply_output_settings,
            "dbg.historyfile": self._apply_history_setting,
        }.get(key)
        if on_change is not None:
            on_change()

        self._save_config()

    def _apply_output_settings(self):
        term.set_use_colors(self._config['dbg.colors'])
        if not self._config['dbg.verbose']:
            self.verboseprint = _silent
            return

        # Arguments are joined lazily so callers don't build strings nobody prints.
        self.verboseprint = lambda *args: self.msg_q(MsgLevel.DEBUG, *args)

    def _apply_history_setting(self):
        filename = self._config['dbg.historyfile']
        if filename:
            filename = os.path.abspath(os.path.expanduser(filename))
        else:
            filename = None
        self._config['dbg.historyfile'] = filename

        if self._history_change_hook:
            self._history_change_hook(filename)

    def set_history_change_hook(self, history_hook):
        """
        Register the function to call when the history filename changes. It is called
        right away with the current filename.
        """
        self._history_change_hook = history_hook
        self._apply_history_setting()

    def get_history_change_hook(self):
        return self._history_change_hook

    def get_conf(self, key):
        Debugger._require_key(key)
        return self._config[key]

    def get_full_config(self):
        """ Return (key, value) pairs for every config setting. """
        return self._config.items()

    def get_conf_keys(self):
        return _dbg_conf_keys
