# (c) Copyright 2022 Aaron Kimball
#
# Text rendering of kernel object snapshots, shared by the repl and the gdb commands.
# Each format_*() method returns a list of lines to print.

from chibios_dbg.snapshot import MISSING, TraceType, ReadyPayload, SwitchPayload, \
    IsrPayload, HaltPayload, UserPayload


def _hex(v):
    """ Format an address-like value; placeholders pass through unchanged. """
    if isinstance(v, int):
        return f'{v:#010x}'
    elif v is None:
        return MISSING
    return str(v)


def _dec(v):
    if v is None:
        return MISSING
    return str(v)


def _table(header, rows):
    """
    Lay out rows of strings in left-aligned columns, separated by two spaces.
    """
    widths = [len(h) for h in header]
    for row in rows:
        for (i, cell) in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def _line(cells):
        return '  '.join([cell.ljust(widths[i]) for (i, cell) in enumerate(cells)]).rstrip()

    lines = [_line(header), _line(['-' * w for w in widths])]
    lines.extend([_line(row) for row in rows])
    return lines


def format_threads(threads):
    if len(threads) == 0:
        return ['(No threads in registry)']

    header = ['Address', 'StkLimit', 'Stack', 'StkUnused', 'Refs', 'State', 'Prio', 'Flags',
              'Time', 'Name']
    rows = []
    for t in threads.values():
        rows.append([_hex(t.addr), _hex(t.stklimit), _hex(t.stack), _dec(t.stkunused),
                     _dec(t.refs), t.state_s, _dec(t.prio), f'{t.flags:#04x}', _dec(t.time),
                     t.name])
    return _table(header, rows)


def format_timers(timers):
    if len(timers) == 0:
        return ['(No armed virtual timers)']

    header = ['Address', 'Delta', 'Callback', 'Param']
    rows = []
    for vt in timers.values():
        rows.append([_hex(vt.addr), _dec(vt.delta), _hex(vt.func), _hex(vt.par)])
    return _table(header, rows)


def _trace_details(event):
    p = event.payload
    if isinstance(p, ReadyPayload):
        return f'thread {_hex(p.tp)} msg {p.msg}'
    elif isinstance(p, SwitchPayload):
        return f'to {_hex(p.ntp)} wtobj {_hex(p.wtobjp)}'
    elif isinstance(p, IsrPayload):
        return p.name
    elif isinstance(p, HaltPayload):
        return p.reason
    elif isinstance(p, UserPayload):
        return f'{_hex(p.up1)} {_hex(p.up2)}'
    return ''


def format_trace(events):
    if len(events) == 0:
        return ['(Trace buffer is empty)']

    header = ['Index', 'Type', 'State', 'RtStamp', 'Time', 'Details']
    rows = []
    for (index, event) in events.items():
        rows.append([str(index), TraceType.name(event.type), event.state_s,
                     _dec(event.rtstamp), _dec(event.time), _trace_details(event)])
    return _table(header, rows)


def format_globals(global_vals):
    width = max([len(k) for k in global_vals.keys()])
    lines = []
    for (k, v) in global_vals.items():
        if isinstance(v, int):
            v = _hex(v)
        lines.append(f'{k.ljust(width)} = {v}')
    return lines


def format_statistics(counters):
    if len(counters) == 0:
        return ['(No statistics enabled in kernel)']

    header = ['Counter', 'Best', 'Worst', 'Count', 'Cumulative']
    rows = []
    for (label, c) in counters.items():
        rows.append([label, _dec(c.best), _dec(c.worst), _dec(c.n), _dec(c.cumulative)])
    return _table(header, rows)
