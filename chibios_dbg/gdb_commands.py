# (c) Copyright 2022 Aaron Kimball
#
# GDB user commands for inspecting ChibiOS/RT kernel objects on the attached target.
#
# Load from gdb with:
#   (gdb) python import chibios_dbg.gdb_commands
#
# then e.g. `chibios threads`, `chibios timers`, `chibios dump kernel.dump`.

import gdb
import queue
import traceback

import chibios_dbg.debugger as debugger
import chibios_dbg.display as display
import chibios_dbg.dump as dump
from chibios_dbg.gdb_proxy import GdbDebugProxy
import chibios_dbg.kernel as kernel
import chibios_dbg.term as term

_session = None


def _gdb_print(line):
    gdb.write(line + '\n')


def get_session():
    """
    Return the Debugger bound to gdb's inferior, creating it on first use.
    """
    global _session
    if _session is None:
        elf_name = gdb.current_progspace().filename
        # Unbounded; it's drained synchronously after each command.
        print_q = queue.Queue()
        _session = debugger.Debugger(GdbDebugProxy(), print_q, elf_name=elf_name)
    return _session


def _flush(session):
    term.drain(session.get_print_q(), _gdb_print)


class ChibiosPrefixCommand(gdb.Command):
    """Inspect ChibiOS/RT kernel objects on the halted target.

Subcommands: threads, timers, trace, globals, stats, dump FILE."""

    def __init__(self):
        super().__init__('chibios', gdb.COMMAND_USER, gdb.COMPLETE_NONE, True)


class SnapshotCommand(gdb.Command):
    """
    A `chibios <name>` subcommand that takes one snapshot and prints it as a table.
    """

    def __init__(self, name, reader_name, formatter, doc):
        self.__doc__ = doc
        self._name = name
        self._reader_name = reader_name
        self._formatter = formatter
        super().__init__(f'chibios {name}', gdb.COMMAND_USER)

    def invoke(self, argument, from_tty):
        session = get_session()
        try:
            result = getattr(session.kernel(), self._reader_name)()
        except kernel.KernelObjectsError as e:
            _flush(session)
            _gdb_print(term.fmt(f'kernel state unavailable: {e}', term.ERR))
            return
        except Exception as e:
            _flush(session)
            _gdb_print(term.fmt(f"Error running 'chibios {self._name}': {e}", term.ERR))
            if session.get_conf('dbg.verbose'):
                traceback.print_tb(e.__traceback__)
            return

        _flush(session)
        if result is None:
            _gdb_print(term.fmt('target is running', term.WARN))
            return

        for line in self._formatter(result):
            _gdb_print(line)


class DumpCommand(gdb.Command):
    """Save the kernel objects of the halted target to a file.

Usage: chibios dump FILE

The file can be inspected later without the target, using `chibios-dbg -d FILE`."""

    def __init__(self):
        super().__init__('chibios dump', gdb.COMMAND_USER, gdb.COMPLETE_FILENAME)

    def invoke(self, argument, from_tty):
        argv = gdb.string_to_argv(argument)
        if len(argv) != 1:
            raise gdb.GdbError('Usage: chibios dump FILE')

        session = get_session()
        _gdb_print(f'Writing kernel state to file ({argv[0]})...')
        try:
            count = dump.capture_dump(session, argv[0])
        except kernel.KernelObjectsError as e:
            _flush(session)
            _gdb_print(term.fmt(f'kernel state unavailable: {e}', term.ERR))
            return
        except (debugger.DebuggerError, OSError) as e:
            _flush(session)
            _gdb_print(term.fmt(f"Error running 'chibios dump': {e}", term.ERR))
            return

        _flush(session)
        _gdb_print(term.fmt(f'Done; recorded {count} values.', term.SUCCESS))


ChibiosPrefixCommand()
SnapshotCommand('threads', 'read_threads', display.format_threads,
                'List the threads in the ChibiOS/RT registry.')
SnapshotCommand('timers', 'read_timers', display.format_timers,
                'List the armed ChibiOS/RT virtual timers.')
SnapshotCommand('trace', 'read_trace', display.format_trace,
                'Show the ChibiOS/RT trace buffer, oldest record first.')
SnapshotCommand('globals', 'read_globals', display.format_globals,
                'Show ChibiOS/RT kernel global state.')
SnapshotCommand('stats', 'read_statistics', display.format_statistics,
                'Show ChibiOS/RT kernel statistics counters.')
DumpCommand()
