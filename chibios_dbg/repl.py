# (c) Copyright 2022 Aaron Kimball
#
# Interactive console for inspecting kernel state loaded from dump files.

import inspect
import os
import os.path
import readline
import signal
from sortedcontainers import SortedDict, SortedList
import traceback

import chibios_dbg.debugger as dbg
import chibios_dbg.display as display
import chibios_dbg.dump as dump
import chibios_dbg.kernel as kernel
import chibios_dbg.term as term


def _softint(intstr, base=10):
    """
        int(intstr, base), or None if intstr isn't a number in that base.
    """
    try:
        return int(intstr, base)
    except ValueError:
        return None


def parse_conf_value(text):
    """
    Convert the text typed after `set <key>` into a config value.

    'true'/'false' (any case) become bools, decimal and 0x-prefixed hex become ints,
    and an empty string clears the key (None). Anything else stays a string.
    """
    text = text.strip()
    if len(text) == 0:
        return None
    elif text.lower() == 'true':
        return True
    elif text.lower() == 'false':
        return False
    elif _softint(text) is not None and text == str(_softint(text)):
        return int(text)
    elif text.startswith('0x') and _softint(text[2:], 16) is not None:
        return int(text[2:], 16)
    return text


class Completions(object):
    """
    Kinds of argument that tab completion knows how to suggest. A Command lists one per
    argument position; a plain list of strings offers exactly those choices instead.
    """
    NONE = ''                   # Nothing to suggest in this position.
    KW = 'kw'                   # A command keyword.
    CONF_KEY = 'conf_key'       # A configuration key.
    PATH = 'path'               # A file path.


class Command(object):
    """
    Decorator that registers a Repl method as a console command.

        @Command(keywords=['threads', 'thr'], completions=[...])
        def _threads(self, argv): ...

    Every keyword invokes the method with the remaining tokens of the line as argv.
    The method's docstring becomes its `help <keyword>` text; its first line is
    the one-line summary in the `help` listing.
    """

    _cmd_map = {}                 # Every keyword -> its Command.
    _cmd_index = SortedDict()     # Primary keyword -> Command, for the `help` listing.
    _cmd_list = SortedList()      # All keywords, for prefix completion.
    _cmd_syntax_completions = {}  # Keyword -> list of Completions for its arguments.

    def __init__(self, keywords, display_help=True, completions=None):
        if not isinstance(keywords, list) or len(keywords) == 0:
            raise Exception("Expected syntax @Command(keywords=['kw', ...])")

        self.keywords = keywords
        self.display_help = display_help
        self.command_func = None
        self.short_help = ''
        self.long_help = ''

        for kw in keywords:
            if kw in Command._cmd_map:
                raise Exception(f"Keyword '{kw}' registered by more than one command")
            Command._cmd_map[kw] = self
            Command._cmd_list.add(kw)
            Command._cmd_syntax_completions[kw] = completions

        Command._cmd_index[keywords[0]] = self

    def invoke(self, repl, args):
        """
        Run the command method on behalf of `repl` with argument list `args`.
        """
        return self.command_func(repl, args)

    def __call__(self, fn):
        self.command_func = fn

        title = self.keywords[0]
        if len(self.keywords) > 1:
            title += f" ({', '.join(self.keywords[1:])})"

        doc_lines = inspect.cleandoc(fn.__doc__ or '').split('\n')
        summary = next((line.strip() for line in doc_lines if line.strip()), None)

        # Highlight the first `Syntax:` line in the full help text.
        for (i, line) in enumerate(doc_lines):
            if line.strip().startswith('Syntax:'):
                doc_lines[i] = term.fmt(line, term.BOLD)
                break

        self.long_help = f"    {title}\n\n" + '\n'.join(doc_lines)
        self.short_help = f'{title} -- {summary}' if summary else title
        return fn

    @classmethod
    def getCommandMap(cls):
        return cls._cmd_map

    @classmethod
    def getCommandIndex(cls):
        return cls._cmd_index

    @classmethod
    def getCommandList(cls):
        return cls._cmd_list

    @classmethod
    def getCommandCompletions(cls, keyword):
        return cls._cmd_syntax_completions.get(keyword)


class ReplAutoComplete(object):
    """
    readline completer function for the Repl.

    readline calls complete(prefix, state) with state = 0, 1, 2... until it returns
    None; the suggestion list for a given input line is computed once and cached.
    """

    def __init__(self, repl):
        self._repl = repl
        self._cached_key = None
        self._cached_result = None

    def clear_cache(self):
        self._cached_key = None
        self._cached_result = None

    def _complete_keyword(self, prefix):
        if not prefix:
            return list(Command.getCommandList())

        # Keywords sorting in [prefix, prefix-with-last-char-incremented) share the prefix.
        upper = prefix[:-1] + chr(ord(prefix[-1]) + 1)
        return list(Command.getCommandList().irange(prefix, upper, inclusive=(True, False)))

    def _complete_conf_key(self, prefix):
        return [k for k in self._repl.debugger().get_conf_keys() if k.startswith(prefix)]

    def _complete_path(self, prefix):
        (parent, partial) = os.path.split(prefix)
        listing = os.listdir(os.path.abspath(parent or '.'))

        suggestions = []
        for entry in sorted(listing):
            if not entry.startswith(partial):
                continue
            path = os.path.join(parent, entry)
            if os.path.isdir(path):
                suggestions.append(path + os.path.sep)  # Keep completing inside the directory.
            else:
                suggestions.append(path + ' ')
        return suggestions

    def _suggest(self, tokens, prefix):
        if len(tokens) <= 1:
            return [kw + ' ' for kw in self._complete_keyword(prefix)]

        arg_pos = len(tokens) - 2  # Which argument of tokens[0] is being completed.
        completion_sets = Command.getCommandCompletions(tokens[0])
        if completion_sets is None or arg_pos >= len(completion_sets):
            return []

        completion_set = completion_sets[arg_pos]
        if completion_set == Completions.NONE:
            return []
        elif completion_set == Completions.KW:
            return [kw + ' ' for kw in self._complete_keyword(prefix)]
        elif completion_set == Completions.CONF_KEY:
            return [k + ' ' for k in self._complete_conf_key(prefix)]
        elif completion_set == Completions.PATH:
            return self._complete_path(prefix)
        elif isinstance(completion_set, list):
            return [choice + ' ' for choice in completion_set if choice.startswith(prefix)]

        raise Exception(f"Unknown completion set: '{completion_set}'")

    def complete(self, prefix, state):
        try:
            line_buffer = readline.get_line_buffer()
            tokens = line_buffer.split()
            if len(tokens) == 0 or line_buffer.endswith(' '):
                tokens.append('')  # Starting a new token.

            key = (prefix, line_buffer)
            if self._cached_key != key or self._cached_result is None:
                self._cached_result = self._suggest(tokens, prefix) + [None]
                self._cached_key = key

            return self._cached_result[state]
        except Exception as e:
            # readline discards exceptions raised by the completer; show them first.
            print(f'\nException in autocomplete: {e}')
            if self._repl.debugger().get_conf("dbg.verbose"):
                traceback.print_tb(e.__traceback__)
            raise


class Repl(object):
    """
    The read-eval-print loop the user types commands into.
    """

    def __init__(self, debugger, console_printer):
        self._debugger = debugger
        self._console_printer = console_printer
        self._break_count = 0  # Consecutive ^C presses at the prompt.

        signal.signal(signal.SIGINT, signal.default_int_handler)

        self._completer = ReplAutoComplete(self)
        readline.parse_and_bind('set editing-mode vi')
        readline.parse_and_bind('set bell-style none')
        readline.parse_and_bind('tab: complete')
        readline.set_completer_delims(" \t\r\n'\"")  # Paths and config keys are single tokens.
        readline.set_completer(self._completer.complete)

        # The debugger tells us the history file now and again whenever dbg.historyfile changes.
        self._history_filename = None
        debugger.set_history_change_hook(self._history_change_callback)

    def debugger(self):
        return self._debugger

    def close(self):
        if self._debugger:
            self._debugger.close()
        self._console_printer.shutdown()

        self._debugger = None
        self._console_printer = None

    def _history_change_callback(self, filename):
        """
        Switch readline history to `filename` (None disables the history file).
        """
        if filename is None:
            self._history_filename = None
            return

        filename = os.path.normpath(filename)
        if filename == self._history_filename and os.path.exists(filename):
            return

        self._history_filename = filename
        if os.path.exists(filename):
            readline.read_history_file(filename)
            self._debugger.verboseprint(f"Loaded history from file: {filename}")
        else:
            self._debugger.verboseprint(f"Creating new history file: {filename}")
            with open(filename, 'w'):
                pass

    def _append_history(self):
        if self._history_filename is None:
            return

        try:
            readline.append_history_file(1, self._history_filename)
        except OSError as e:
            term.write(f'Cannot write history file {self._history_filename}: {e}', term.WARN)
            term.write('History recording is off; set dbg.historyfile to try another file.',
                term.WARN)
            self._history_filename = None

    def _show_snapshot(self, reader, formatter):
        """
        Take a snapshot with one of the KernelObjects read methods and print it.

        Returns the snapshot, or None if none could be taken.
        """
        try:
            result = reader()
        except kernel.KernelObjectsError as e:
            term.write(f'kernel state unavailable: {e}', term.ERR)
            return None

        if result is None:
            term.write('target is running', term.WARN)
            return None

        for line in formatter(result):
            print(line)
        return result

    @Command(keywords=['threads', 'thr'])
    def _threads(self, argv):
        """
        List the threads in the kernel registry

        Shows one row per thread, oldest first: thread address, stack bounds, unused
        stack bytes, reference count, state, priority, flags, consumed ticks and name.

        Unused stack is the number of bytes still holding the fill pattern above the
        working area base; 'overflow' means the saved stack pointer is below it.
        Fields the kernel was built without are shown as '-'.
        """
        self._show_snapshot(self._debugger.kernel().read_threads, display.format_threads)

    @Command(keywords=['timers', 'vt'])
    def _timers(self, argv):
        """
        List the armed virtual timers

        Timers are shown in delta list order; each delta is relative to the timer
        before it.
        """
        self._show_snapshot(self._debugger.kernel().read_timers, display.format_timers)

    @Command(keywords=['trace', 'tr'])
    def _trace(self, argv):
        """
        Show the kernel trace buffer

            Syntax: trace [count]

        Records are listed oldest first. The newest record has index 0 and older ones
        have negative indices. If count is given, only the newest `count` slots are shown.
        """
        count = None
        if len(argv) > 0:
            count = _softint(argv[0], 0)
            if count is None or count < 0:
                print("Syntax: trace [count]")
                return

        def _format(events):
            if count is not None:
                events = dict([(idx, ev) for (idx, ev) in events.items() if idx > -count])
            return display.format_trace(events)

        self._show_snapshot(self._debugger.kernel().read_trace, _format)

    @Command(keywords=['globals', 'g'])
    def _globals(self, argv):
        """
        Show kernel global state

        Includes the system time, the current thread, the panic message and whether
        the target was halted inside an ISR or a critical section.
        """
        self._show_snapshot(self._debugger.kernel().read_globals, display.format_globals)

    @Command(keywords=['stats'])
    def _stats(self, argv):
        """
        Show kernel statistics counters

        Only the counters enabled in the kernel configuration are listed.
        """
        self._show_snapshot(self._debugger.kernel().read_statistics, display.format_statistics)

    @Command(keywords=['set'], completions=[Completions.CONF_KEY])
    def _set_conf(self, argv):
        """
        Set or retrieve a config variable of the debugger

            Syntax: set [keyname [[=] value]]

        * `set` alone prints every setting.
        * `set keyname` prints one setting.
        * `set keyname value`, `set keyname = value` or `set keyname=value` changes it.
          Numbers are decimal unless prefixed with "0x"; true/false are booleans.
        * `set keyname =` clears the setting.

        Changes are saved to ~/.chibios_dbg.conf for later sessions.
        """

        def _fmt_value(k, v):
            if isinstance(v, int) and not isinstance(v, bool) and k.startswith('dump.'):
                return f"0x{v:x}"  # Addresses.
            return f"{v}"

        line = " ".join(argv)
        if len(argv) == 0:
            print("Configurable debugger settings:")
            print("-------------------------------")
            for (k, v) in self._debugger.get_full_config():
                print(f"{k} = {_fmt_value(k, v)}")
            return

        if '=' in line:
            (k, v) = line.split('=', 1)
        elif len(argv) == 1:
            k = argv[0]
            try:
                print(f"{k} = {_fmt_value(k, self._debugger.get_conf(k))}")
            except KeyError as e:
                print(str(e))
            return
        else:
            k = argv[0]
            v = " ".join(argv[1:])

        k = k.strip()
        try:
            self._debugger.set_conf(k, parse_conf_value(v))
        except KeyError as e:
            print(str(e))

    @Command(keywords=['load'], completions=[Completions.PATH, Completions.PATH])
    def load_dump_image(self, argv):
        """
        Load kernel state from a dump file for offline inspection

            Syntax: load <filename> [elf_file]

        Dump files are written by the `chibios dump <filename>` command inside gdb. If
        an ELF file is given, it is used instead of the one named in the dump to find
        memory (e.g. thread names in flash) that the dump did not capture.
        This replaces any dump that is currently loaded.
        """
        if len(argv) == 0:
            print("Error: Missing filename")
            print("Syntax: load <filename> [elf_file]")
            return

        elf_name = argv[1] if len(argv) > 1 else None
        print(f"Loading kernel state from {argv[0]}...")
        debugger = dump.load_dump(argv[0], self._console_printer.print_q, elf_name=elf_name,
            history_change_hook=self._history_change_callback)

        self._debugger.close()
        self._debugger = debugger

    @Command(keywords=['help'], completions=[Completions.KW])
    def print_help(self, argv):
        """
        Print usage information

            Syntax: help [cmd]

        With a command name, prints the full usage for that command. Otherwise lists
        every command with a one-line summary.
        """
        if len(argv) > 0:
            cmd_obj = Command.getCommandMap().get(argv[0])
            if cmd_obj is None:
                print(f"Error: No command {argv[0]} found.")
                print("Try 'help' to list all available commands.")
            else:
                print(cmd_obj.long_help)
            return

        print("Commands")
        print("--------")
        for cmd_obj in Command.getCommandIndex().values():
            if cmd_obj.display_help:
                print(cmd_obj.short_help)

        print("")
        print("For more information, type: help <command>")

    @Command(keywords=['quit', 'exit', '\\q'])
    def _quit(self, argv):
        """
        Quit the debugger console
        """
        # Registered for `help quit` only; run_command() handles quitting itself.
        pass

    def run_command(self, cmdline):
        """
            Execute one command line. Returns True if the user asked to quit.
        """
        tokens = cmdline.split()
        if len(tokens) == 0:
            return False

        cmd = tokens[0]
        cmd_obj = Command.getCommandMap().get(cmd)
        if cmd_obj is None:
            print(f"Unknown command '{cmd}'; try 'help'.")
            return False
        elif cmd_obj.command_func == Repl._quit:
            return True

        try:
            cmd_obj.invoke(self, tokens[1:])
        except Exception as e:
            term.write(f"Error running '{cmd}': {e}", term.ERR)
            if isinstance(e, dbg.NoTargetError):
                print("Use 'load <dumpfile>' to load kernel state.")
            elif self._debugger.get_conf("dbg.verbose"):
                traceback.print_tb(e.__traceback__)
            else:
                print("For stack trace info, `set dbg.verbose True`")

        return False

    def loop_input_body(self):
        """
            Read and run one line of input. Returns True if we want to quit.
        """
        try:
            self._completer.clear_cache()
            cmdline = term.readline_input()
        except KeyboardInterrupt:
            print('')  # End the line that shows '^C'.
            self._break_count += 1
            if self._break_count >= 3:
                print("Use 'quit' to exit the debugger.")
                self._break_count = 0
            return False
        except EOFError:
            print('')  # ^D
            return True

        self._break_count = 0
        if len(cmdline) > 0:
            self._append_history()

        return self.run_command(cmdline)

    def loop(self):
        """
            Run commands until the user quits. Returns the process exit status.
        """
        self._console_printer.set_readline_enabled(True)
        if not self._debugger.has_proxy():
            print("No kernel state loaded; use 'load <dumpfile>'.")

        quit = False
        while not quit:
            try:
                quit = self.loop_input_body()
            except KeyboardInterrupt:
                print('')

        return 0
