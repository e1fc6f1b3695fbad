# (c) Copyright 2022 Aaron Kimball
#
# Console output: VT100 colors, and the message queue through which the debugger
# reports progress and problems.

import queue
import threading

COLOR_OFF    = '\033[0m'
COLOR_BOLD   = '\033[1m'
COLOR_GRAY   = '\033[90m'
COLOR_RED    = '\033[91m'
COLOR_GREEN  = '\033[92m'
COLOR_YELLOW = '\033[93m'
COLOR_CYAN   = '\033[96m'

BOLD    = COLOR_BOLD
SUCCESS = COLOR_GREEN
WARN    = COLOR_YELLOW
ERR     = COLOR_RED

PROMPT = "\r(chdbg) "

_colors_on = True  # Follows the dbg.colors setting.


def set_use_colors(do_use_colors):
    global _colors_on
    _colors_on = bool(do_use_colors)


def fmt(text, color_code=None):
    """
    Wrap text in a color code and reset, unless colors are off.
    """
    if not _colors_on or color_code is None:
        return text
    return f'{color_code}{text}{COLOR_OFF}'


def write(text, color_code=None):
    print(fmt(text, color_code))


class MsgLevel(object):
    """
    Severity of a message put on the print queue as a (text, level) pair.
    """
    INFO    = 0
    TARGET  = 1     # Text that came from the target (e.g. the panic message).
    WARN    = 2
    ERR     = 3
    DEBUG   = 4     # Debugger.verboseprint()
    SUCCESS = 5

    # n.b. inside the class body, WARN etc. are the levels, not the colors.
    _colors = {
        INFO: None,
        TARGET: COLOR_CYAN,
        WARN: COLOR_YELLOW,
        ERR: COLOR_RED,
        DEBUG: COLOR_GRAY,
        SUCCESS: COLOR_GREEN,
    }

    @staticmethod
    def color_for_msg(msg_level):
        return MsgLevel._colors.get(msg_level)


def drain(print_q, write_fn=print):
    """
    Print everything currently waiting in print_q through write_fn, then return.

    Used where there is no ConsolePrinter thread, e.g. inside gdb, which owns the
    terminal and wants output written synchronously through gdb.write().
    """
    while True:
        try:
            (text, level) = print_q.get(block=False)
        except queue.Empty:
            return

        write_fn(fmt(text, MsgLevel.color_for_msg(level)))
        print_q.task_done()


class ConsolePrinter(object):
    """
    Background thread that prints the (text, level) messages other threads put on
    print_q, redrawing the repl prompt and any partial input after each one.
    """

    POLL_INTERVAL = 0.25  # seconds; how often the thread checks whether to stop.

    def __init__(self):
        self.print_q = queue.Queue(maxsize=64)
        self._running = True
        self._redraw_prompt = False
        self._thread = threading.Thread(target=self.service, name='Console print thread')

    def start(self):
        self._thread.start()

    def shutdown(self):
        self._running = False
        self._thread.join()

    def set_readline_enabled(self, rl_enabled):
        """
        Once the repl is reading input, redraw its prompt after each message.
        """
        self._redraw_prompt = rl_enabled

    def join_q(self):
        """
        Block until every queued message has been printed.
        """
        self.print_q.join()

    def service(self):
        while self._running:
            try:
                (text, level) = self.print_q.get(block=True, timeout=ConsolePrinter.POLL_INTERVAL)
            except queue.Empty:
                continue

            self.emit(text, level)
            self.print_q.task_done()

    def emit(self, text, level):
        prompt_visible = self._redraw_prompt and _prompt_active
        pending_input = ''
        if prompt_visible:
            import readline  # Not importable under gdb, which only uses drain().
            pending_input = readline.get_line_buffer()

        # Overwrite the prompt line with the message, then put the prompt back.
        blank = ' ' * (len(PROMPT) + len(pending_input))
        print(f'\r{blank}\r{fmt(text, MsgLevel.color_for_msg(level))}', flush=True)
        if prompt_visible:
            print(f'{PROMPT}{pending_input}', end='', flush=True)


class NullPrinter(ConsolePrinter):
    """
    ConsolePrinter that drains its queue without printing anything.
    """

    def emit(self, text, level):
        pass


# True while readline_input() is waiting on the user.
_prompt_active = False


def readline_input():
    """
    input() with the repl prompt, tracking when the prompt is on screen so that
    ConsolePrinter knows to redraw it.
    """
    global _prompt_active

    _prompt_active = True
    try:
        return input(PROMPT)
    finally:
        _prompt_active = False
