# (c) Copyright 2022 Aaron Kimball
#
# DebugProxy backed by GDB's embedded python interpreter. Only importable inside gdb.

import gdb

from chibios_dbg.proxy import DebugProxy, UnresolvedError, TargetUnavailableError


def _gdb_failure(what, err):
    """
    The DebugProxyError for a gdb.error raised while reading `what`.
    """
    if 'is running' in str(err):
        return TargetUnavailableError(str(err))
    return UnresolvedError(f'{what}: {err}')


class GdbDebugProxy(DebugProxy):
    """
    Evaluates expressions and reads memory on the inferior GDB is attached to.
    """

    def _check_halted(self):
        thread = gdb.selected_thread()
        if thread is None:
            raise TargetUnavailableError('No target process')
        if thread.is_running():
            raise TargetUnavailableError('Target is running')

    def evaluate(self, expr):
        self._check_halted()
        try:
            return str(gdb.parse_and_eval(expr))
        except gdb.MemoryError as e:
            raise UnresolvedError(f'{expr}: {e}')
        except gdb.error as e:
            raise _gdb_failure(expr, e)

    def read_memory(self, addr, size):
        self._check_halted()
        what = f'{size} bytes at {addr:#010x}'
        try:
            return bytes(gdb.selected_inferior().read_memory(addr, size))
        except gdb.MemoryError as e:
            raise UnresolvedError(f'Cannot read {what}: {e}')
        except gdb.error as e:
            raise _gdb_failure(what, e)
