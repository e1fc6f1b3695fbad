# (c) Copyright 2022 Aaron Kimball
#
# The value access port: how the kernel object readers talk to the debug backend.
# Concrete backends live in gdb_proxy (live target inside GDB) and dump (offline replay).


class DebugProxyError(Exception):
    """
    Base class for errors reported by a DebugProxy.
    """
    pass


class UnresolvedError(DebugProxyError):
    """ The symbol, struct field or memory address does not exist on the target. """
    pass


class TargetUnavailableError(DebugProxyError):
    """ The backend is disconnected or the target is running; try again later. """
    pass


# Bytes fetched per read_memory() call when scanning a stack for its fill pattern.
SCAN_CHUNK_SIZE = 64


def parse_number(text):
    """
    Convert the textual result of an expression evaluation into an int.

    Accepts decimal, 0x-prefixed hex, and GDB's char rendering ("85 'U'"), where
    only the leading token is numeric. Raises UnresolvedError if no number can be
    found in the text.
    """
    if text is None:
        raise UnresolvedError("No value")

    tokens = text.strip().split()
    if len(tokens) == 0:
        raise UnresolvedError("Empty value")

    try:
        return int(tokens[0], 0)
    except ValueError:
        pass

    try:
        # int(x, 0) rejects leading zeros like '0123'; those are plain decimal here.
        return int(tokens[0], 10)
    except ValueError:
        raise UnresolvedError(f"Not a number: '{text.strip()}'")


def decode_cstring(data):
    """
    Decode bytes read from the target as a NUL-terminated C string.
    """
    nul = data.find(b'\x00')
    if nul >= 0:
        data = data[:nul]
    return data.decode('latin-1')


class DebugProxy(object):
    """
    Evaluates C expressions and reads memory on a halted target.

    Subclasses implement two primitives:
    - evaluate(expr) returns the textual value of a C expression.
    - read_memory(addr, size) returns `size` bytes of target memory.

    Both raise UnresolvedError if the expression or address cannot be resolved and
    TargetUnavailableError if the backend cannot service the request right now.
    The helpers in this base class are built on top of them.
    """

    def evaluate(self, expr):
        raise NotImplementedError()

    def read_memory(self, addr, size):
        raise NotImplementedError()

    def close(self):
        pass

    def eval_text(self, expr):
        """
        Return the value of `expr` as text.
        """
        return self.evaluate(expr)

    def eval_number(self, expr):
        """
        Return the value of `expr` as an int.
        """
        return parse_number(self.evaluate(expr))

    def read_cstring(self, addr, max_len):
        """
        Read up to max_len bytes at addr and decode them as a NUL-terminated string.
        """
        if max_len <= 0:
            return ''
        return decode_cstring(bytes(self.read_memory(addr, max_len)))

    def scan_fill(self, start, end, fill):
        """
        Count the contiguous bytes equal to `fill` from `start` up toward `end`.

        Used to estimate the unused part of a stack that was pre-filled with a
        known pattern; the scan stops at the first byte that does not match.
        """
        count = 0
        pos = start
        while pos < end:
            chunk_len = min(SCAN_CHUNK_SIZE, end - pos)
            chunk = bytes(self.read_memory(pos, chunk_len))
            for b in chunk:
                if b != fill:
                    return count
                count += 1
            pos += chunk_len

        return count
