# (c) Copyright 2022 Aaron Kimball

import argparse
import sys

from .debugger import Debugger
from .term import ConsolePrinter
from .version import DBG_VERSION_STR, FULL_DBG_VERSION_STR
import chibios_dbg.dump as dump

__version__ = DBG_VERSION_STR

def _parseArgs(argv):
    parser = argparse.ArgumentParser(
        description="Offline viewer for ChibiOS/RT kernel objects captured from a halted target")
    parser.add_argument("-f", "--file", metavar="elf_file")
    parser.add_argument("-d", "--dump", metavar="dump_file")
    parser.add_argument("-v", "--version", action="version", version=FULL_DBG_VERSION_STR)

    return parser.parse_args(argv)

def main(argv=None):
    from .repl import Repl  # Needs readline, which gdb blocks; keep it out of gdb_commands.

    ret = 1
    args = _parseArgs(argv)

    console_printer = ConsolePrinter()
    console_printer.start()
    try:
        if args.dump:
            # Create a Debugger for the specified dump file.
            debugger = dump.load_dump(args.dump, console_printer.print_q, elf_name=args.file)
        else:
            # No target yet; the user can `load` a dump from the prompt.
            debugger = Debugger(None, console_printer.print_q, elf_name=args.file)
        console_printer.join_q()
        repl = Repl(debugger, console_printer)
    except BaseException:
        # if we created the Repl, it would own console_printer and shut it down at any
        # point after this. But any exception here prevents that; shut it down cleanly
        # ourselves, first.
        console_printer.shutdown()
        raise

    try:
        ret = repl.loop()
    finally:
        repl.close()

    sys.exit(ret)
