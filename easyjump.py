#!/usr/bin/env python3
import codecs
import errno
import functools
import logging
import os
import re
import sys
import termios
import time
import tty
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Callable, List, Optional, Sequence, Tuple, Union

WORD = "word"
END = "end"
SEARCH = "search"
MODES = (WORD, END, SEARCH)

CASE_DEFAULT = "default"
CASE_IGNORE = "ignorecase"
CASE_SMART = "smartcase"

# Span kinds, lowest priority first
DIM = "dim"
PRIMARY = "primary"
SECONDARY = "secondary"
TERTIARY = "tertiary"
PROMPT = "prompt"

WORD_RE = re.compile(r"\w+")


@functools.lru_cache(maxsize=1)
def _get_all_options() -> dict:
    """Batch read all EASYJUMP_* options in one pass."""
    return {
        key: value for key, value in os.environ.items() if key.startswith("EASYJUMP_")
    }


def get_option(option: str, default: str) -> str:
    """Get option value, falling back to default if not set."""
    return _get_all_options().get(option, default)


@dataclass
class Config:
    """Configuration for easyjump."""

    keys: str = field(
        default="abcdefghijklmnopqrstuvwxyz", metadata={"opt": "EASYJUMP_KEYS"}
    )
    search_case: str = field(
        default=CASE_DEFAULT, metadata={"opt": "EASYJUMP_SEARCH_CASE"}
    )
    style_primary: str = field(
        default="1;38;5;196", metadata={"opt": "EASYJUMP_STYLE_PRIMARY"}
    )
    style_secondary: str = field(
        default="1;38;5;208", metadata={"opt": "EASYJUMP_STYLE_SECONDARY"}
    )
    style_tertiary: str = field(
        default="1;38;5;94", metadata={"opt": "EASYJUMP_STYLE_TERTIARY"}
    )
    style_dim: str = field(default="1;30", metadata={"opt": "EASYJUMP_STYLE_DIM"})
    style_prompt: str = field(default="1;32", metadata={"opt": "EASYJUMP_STYLE_PROMPT"})
    prompt_key: str = field(
        default="Target key: ", metadata={"opt": "EASYJUMP_PROMPT_KEY"}
    )
    prompt_char: str = field(
        default="Search for character: ", metadata={"opt": "EASYJUMP_PROMPT_CHAR"}
    )

    def __post_init__(self):
        # Keys must be distinct; keep the first occurrence of each
        self.keys = "".join(dict.fromkeys(self.keys))

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Config":
        """Load configuration from EASYJUMP_* environment variables."""
        if environ is None:
            lookup = get_option
        else:
            lookup = environ.get
        return cls(**{f.name: lookup(f.metadata["opt"], f.default) for f in fields(cls)})

    def styles(self) -> dict:
        return {
            PRIMARY: self.style_primary,
            SECONDARY: self.style_secondary,
            TERTIARY: self.style_tertiary,
            DIM: self.style_dim,
            PROMPT: self.style_prompt,
        }


def setup_logging():
    """Initialize logging configuration based on EASYJUMP_* options"""
    debug = get_option("EASYJUMP_DEBUG", "false").lower() == "true"
    perf = get_option("EASYJUMP_PERF", "false").lower() == "true"

    if not (debug or perf):
        logging.getLogger().disabled = True
        return

    log_file = os.path.expanduser("~/easyjump.log")
    logging.basicConfig(
        filename=log_file,
        level=logging.DEBUG,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def perf_timer(func_name=None):
    """Performance timing decorator that only logs when perf is enabled"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            perf = get_option("EASYJUMP_PERF", "false").lower() == "true"
            if not perf:
                return func(*args, **kwargs)

            name = func_name or func.__name__
            start_time = time.perf_counter()
            result = func(*args, **kwargs)
            end_time = time.perf_counter()

            logging.info(f"{name} took: {end_time - start_time:.6f} seconds")
            return result

        return wrapper

    return decorator


class JumpError(Exception):
    """A jump session ended without a target. Always resolves to Failed."""


class NoCandidates(JumpError):
    pass


class InvalidSearchChar(JumpError):
    pass


class CapacityExceeded(JumpError):
    pass


class InputCancelled(JumpError):
    pass


class NoMatch(JumpError):
    """The typed keys are not a prefix of any jump key."""


class LengthMismatch(ValueError):
    """Positions and keys were not produced from the same target count."""


@dataclass(frozen=True)
class KeymapEntry:
    key: str
    position: int


@dataclass(frozen=True)
class Span:
    start: int
    end: int
    kind: str


@dataclass(frozen=True)
class Overlay:
    text: str
    spans: Tuple[Span, ...]


@dataclass(frozen=True)
class Active:
    typed: str
    keymap: Tuple[KeymapEntry, ...]


@dataclass(frozen=True)
class Resolved:
    position: int


@dataclass(frozen=True)
class Failed:
    reason: str = ""


State = Union[Active, Resolved, Failed]
Outcome = Union[Resolved, Failed]


# ============================================================================
# Position finding
# ============================================================================


@perf_timer("Finding boundaries")
def find_boundaries(mode: str, buffer: str) -> List[int]:
    """Return 1-based word starts (mode "word") or word ends (mode "end")"""
    if mode == WORD:
        return [m.start() + 1 for m in WORD_RE.finditer(buffer)]
    if mode == END:
        return [m.end() for m in WORD_RE.finditer(buffer)]
    raise ValueError(f"Invalid boundary mode: {mode}")


def _either_case(char: str) -> str:
    variants = [char]
    for other in (char.lower(), char.upper()):
        # Skip case mappings that expand to several characters, e.g. 'ß' -> 'SS'
        if len(other) == 1 and other not in variants:
            variants.append(other)
    if len(variants) == 1:
        return re.escape(char)
    return "[" + "".join(re.escape(v) for v in variants) + "]"


def char_to_pattern(char: str, case_mode: str = CASE_DEFAULT) -> str:
    """Convert a search character to a regular expression

    default     -- the literal character only
    ignorecase  -- either case, if the character is alphabetic
    smartcase   -- either case, if the character is lowercase;
                   an explicit uppercase character stays case-sensitive

    Any other mode behaves like default.
    """
    if case_mode == CASE_IGNORE and char.isalpha():
        return _either_case(char)
    if case_mode == CASE_SMART and char.islower():
        return _either_case(char)
    return re.escape(char)


@perf_timer("Finding matches")
def find_matches(pattern: str, buffer: str) -> List[int]:
    """Return the 1-based start of every non-overlapping match, left to right"""
    return [m.start() + 1 for m in re.finditer(pattern, buffer)]


def find_positions(mode: str, buffer: str) -> List[int]:
    """Position finder for the word modes; search mode needs a key first"""
    if mode == SEARCH:
        raise ValueError("search mode positions come from find_matches()")
    return find_boundaries(mode, buffer)


def is_printable(text: Optional[str]) -> bool:
    return text is not None and len(text) == 1 and text.isprintable()


# ============================================================================
# Key assignment and keymaps
# ============================================================================


def assign_keys(target_count: int, alphabet: Sequence[str]) -> List[str]:
    """Generate target_count prefix-free jump keys of length 1 or 2

    The first characters of the alphabet become single keys; the last
    ``reserved`` characters become prefixes, each followed by every
    alphabet character. ``reserved`` is the smallest count whose capacity
    ``(K - reserved) + reserved * K`` covers target_count.

    Raises CapacityExceeded when target_count > K * K.
    """
    if target_count <= 0:
        return []

    keys = list(alphabet)
    key_count = len(keys)
    max_keys = key_count * key_count
    if target_count > max_keys:
        raise CapacityExceeded(
            f"{target_count} targets exceed the capacity {max_keys} of {key_count} keys"
        )

    reserved = 0
    while (key_count - reserved) + reserved * key_count < target_count:
        reserved += 1

    singles = key_count - reserved
    result = keys[:singles]
    for prefix in keys[singles:]:
        result.extend(prefix + suffix for suffix in keys)

    logging.debug(f"{target_count} targets, {singles} single keys, {reserved} prefixes")
    return result[:target_count]


def build_keymap(positions: Sequence[int], keys: Sequence[str]) -> Tuple[KeymapEntry, ...]:
    """Pair positions with keys in discovery order"""
    if len(positions) != len(keys):
        raise LengthMismatch(f"{len(positions)} positions but {len(keys)} keys")
    return tuple(KeymapEntry(key, position) for key, position in zip(keys, positions))


# ============================================================================
# Overlay
# ============================================================================


def compute_overlay(
    buffer: str, typed: str, keymap: Sequence[KeymapEntry]
) -> Overlay:
    """Compute the replacement text and highlight spans for a jump state

    Each entry's key, minus the already typed prefix, is drawn over the
    buffer at the entry's position. Spans are 0-based and half-open; the
    whole buffer is dimmed first and later spans take precedence.
    """
    chars = list(buffer)
    primary = []
    multi = []
    for entry in keymap:
        shown = entry.key[len(typed):]
        if not shown:
            continue
        start = entry.position - 1
        # A two-character key on the last character extends the text
        chars[start:start + len(shown)] = shown
        if len(shown) == 1:
            primary.append(Span(start, start + 1, PRIMARY))
        else:
            multi.append(Span(start, start + 1, SECONDARY))
            multi.append(Span(start + 1, start + 2, TERTIARY))

    spans = [Span(0, len(buffer), DIM)] + primary + multi
    return Overlay("".join(chars), tuple(spans))


def style_at(spans: Sequence[Span], length: int) -> List[Optional[str]]:
    """Resolve the winning span kind for each of length characters"""
    kinds: List[Optional[str]] = [None] * length
    for span in spans:
        for i in range(max(span.start, 0), min(span.end, length)):
            kinds[i] = span.kind
    return kinds


# ============================================================================
# Jump state machine
# ============================================================================


def settle(state: Active) -> State:
    """Apply the terminal rules to a freshly entered Active state"""
    if not state.keymap:
        return Failed(NoMatch.__name__)
    if len(state.keymap) == 1:
        return Resolved(state.keymap[0].position)
    return state


def feed(state: Active, key: str) -> State:
    """Extend the typed sequence by one key and narrow the keymap"""
    typed = state.typed + key
    keymap = tuple(entry for entry in state.keymap if entry.key.startswith(typed))
    logging.debug(f"Typed {typed!r}: {len(keymap)} candidates left")
    return settle(Active(typed, keymap))


class Keyboard(ABC):
    @abstractmethod
    def read_key(self) -> Optional[str]:
        """Block for one keystroke without echo; None when cancelled"""
        pass


class Renderer(ABC):
    @abstractmethod
    def show(self, text: str, spans: Sequence[Span], prompt: str):
        """Display text with highlight spans and a prompt"""
        pass

    @abstractmethod
    def redraw(self):
        """Flush pending output"""
        pass


class JumpSession:
    """One interactive narrowing loop over a keymap"""

    def __init__(
        self,
        buffer: str,
        keymap: Sequence[KeymapEntry],
        keyboard: Keyboard,
        renderer: Renderer,
        prompt: str = "",
    ):
        self.buffer = buffer
        self.keymap = tuple(keymap)
        self.keyboard = keyboard
        self.renderer = renderer
        self.prompt = prompt
        self.keys_read = ""

    @perf_timer("Jump session")
    def run(self) -> Outcome:
        state = settle(Active("", self.keymap))
        while isinstance(state, Active):
            overlay = compute_overlay(self.buffer, state.typed, state.keymap)
            self.renderer.show(overlay.text, overlay.spans, self.prompt)
            self.renderer.redraw()

            key = self.keyboard.read_key()
            if key is None:
                return Failed(InputCancelled.__name__)
            self.keys_read += key
            state = feed(state, key)
        return state


# ============================================================================
# Engine
# ============================================================================


class Engine:
    """Compose position finding, key assignment and the jump session"""

    def __init__(
        self,
        keyboard: Keyboard,
        renderer: Renderer,
        config: Optional[Config] = None,
        find: Callable[[str, str], List[int]] = find_positions,
        assign: Callable[[int, Sequence[str]], List[str]] = assign_keys,
        build: Callable[..., Tuple[KeymapEntry, ...]] = build_keymap,
        match: Callable[[str, str], List[int]] = find_matches,
    ):
        self.keyboard = keyboard
        self.renderer = renderer
        self.config = config or Config()
        self.find = find
        self.match = match
        self.assign = assign
        self.build = build

    def search_positions(self, buffer: str) -> List[int]:
        """Prompt for a search character and locate its occurrences"""
        self.renderer.show(buffer, (), self.config.prompt_char)
        self.renderer.redraw()
        char = self.keyboard.read_key()
        if char is None:
            raise InputCancelled("search character not entered")
        if not is_printable(char):
            raise InvalidSearchChar(f"not a printable character: {char!r}")
        pattern = char_to_pattern(char, self.config.search_case)
        logging.debug(f"Search pattern: {pattern!r}")
        return self.match(pattern, buffer)

    def candidates(self, mode: str, buffer: str) -> List[int]:
        if mode not in MODES:
            raise ValueError(f"Invalid motion mode: {mode}")
        if mode == SEARCH:
            positions = self.search_positions(buffer)
        else:
            positions = self.find(mode, buffer)
        if not positions:
            raise NoCandidates(f"no {mode} positions in {buffer!r}")
        return positions

    def keymap(self, positions: Sequence[int]) -> Tuple[KeymapEntry, ...]:
        keys = self.assign(len(positions), self.config.keys)
        return self.build(positions, keys)

    @perf_timer("Total execution")
    def invoke(self, mode: str, buffer: str) -> Outcome:
        try:
            positions = self.candidates(mode, buffer)
            keymap = self.keymap(positions)
        except JumpError as e:
            logging.info(f"{type(e).__name__}: {e}")
            return Failed(type(e).__name__)

        session = JumpSession(
            buffer, keymap, self.keyboard, self.renderer, self.config.prompt_key
        )
        outcome = session.run()
        logging.debug(f"Outcome after {session.keys_read!r}: {outcome}")
        return outcome


def jump_widget(
    engine: Engine, mode: str, buffer: str, cursor: int
) -> Tuple[int, Outcome]:
    """Run a jump and return the new 0-based cursor with the outcome

    The original cursor is kept when the jump fails, and the buffer is
    always redrawn without the overlay afterwards.
    """
    try:
        outcome = engine.invoke(mode, buffer)
    finally:
        engine.renderer.show(buffer, (), "")
        engine.renderer.redraw()
    if isinstance(outcome, Resolved):
        return outcome.position - 1, outcome
    return cursor, outcome


# ============================================================================
# Terminal
# ============================================================================


@functools.lru_cache(maxsize=1024)
def get_char_width(char: str) -> int:
    """Get visual width of a single character with caching"""
    return 2 if unicodedata.east_asian_width(char) in "WF" else 1


@functools.lru_cache(maxsize=1024)
def get_string_width(s: str) -> int:
    """Calculate visual width of string, accounting for double-width characters"""
    return sum(map(get_char_width, s))


def _read_char(fd: int) -> str:
    """Read exactly one UTF-8 character, one byte at a time; "" at EOF"""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    ch = ""
    while not ch:
        try:
            data = os.read(fd, 1)
        except OSError as e:
            # A hung-up terminal reports EIO instead of EOF
            if e.errno != errno.EIO:
                raise
            data = b""
        if not data:
            return decoder.decode(b"", final=True)
        ch = decoder.decode(data)
    return ch


def getch(fd: int) -> Optional[str]:
    """Read one character from fd, in raw mode and without echo if it is a tty

    Bytes after the character stay unread for the next call. Returns
    None on Ctrl-C or end of input.
    """
    if os.isatty(fd):
        old_settings = termios.tcgetattr(fd)
        try:
            # TCSANOW keeps keys typed ahead of this call
            tty.setraw(fd, termios.TCSANOW)
            ch = _read_char(fd)
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
    else:
        ch = _read_char(fd)
    if not ch or ch == "\x03":
        logging.info("Operation cancelled by user")
        return None
    return ch


class TerminalKeyboard(Keyboard):
    def __init__(self, fd: int):
        self.fd = fd

    def read_key(self) -> Optional[str]:
        return getch(self.fd)


class Screen(ABC):
    A_NORMAL = None
    A_DIM = DIM
    A_PRIMARY = PRIMARY
    A_SECONDARY = SECONDARY
    A_TERTIARY = TERTIARY
    A_PROMPT = PROMPT

    @abstractmethod
    def transform_attr(self, attr):
        """Transform generic attributes to implementation-specific attributes"""
        pass

    @abstractmethod
    def init(self):
        """Initialize the screen"""
        pass

    @abstractmethod
    def cleanup(self):
        """Cleanup the screen"""
        pass

    @abstractmethod
    def addstr(self, y: int, x: int, text: str, attr=None):
        """Add string with attributes"""
        pass

    @abstractmethod
    def clear_line(self, y: int):
        """Clear one row"""
        pass

    @abstractmethod
    def refresh(self):
        """Refresh the screen"""
        pass


class AnsiSequence(Screen):
    """Screen over ANSI escapes, anchored at the row the cursor was on

    Row 0 is the anchor row, row 1 the row below it.
    """

    ESC = "\033"
    SAVE_CURSOR = f"{ESC}7"
    RESTORE_CURSOR = f"{ESC}8"
    CLEAR_LINE = f"{ESC}[2K"
    HIDE_CURSOR = f"{ESC}[?25l"
    SHOW_CURSOR = f"{ESC}[?25h"
    RESET = f"{ESC}[0m"

    def __init__(self, stream, styles: Optional[dict] = None):
        self.stream = stream
        self.styles = styles if styles is not None else Config().styles()

    def init(self):
        # Reserve the prompt row, then anchor at the start of the line above it
        self.stream.write(f"\n{self.ESC}[A\r{self.SAVE_CURSOR}{self.HIDE_CURSOR}")
        self.stream.flush()

    def cleanup(self):
        self.clear_line(1)
        self.stream.write(self.RESTORE_CURSOR)
        self.stream.write(self.SHOW_CURSOR)
        self.stream.write(self.RESET)
        self.stream.flush()

    def transform_attr(self, attr):
        style = self.styles.get(attr)
        if style:
            return f"{self.ESC}[{style}m"
        return ""

    def _goto(self, y: int, x: int) -> str:
        move = self.RESTORE_CURSOR
        if y > 0:
            move += f"{self.ESC}[{y}B"
        return move + f"{self.ESC}[{x + 1}G"

    def addstr(self, y: int, x: int, text: str, attr=None):
        attr_str = self.transform_attr(attr)
        if attr_str:
            self.stream.write(f"{self._goto(y, x)}{attr_str}{text}{self.RESET}")
        else:
            self.stream.write(f"{self._goto(y, x)}{text}")

    def clear_line(self, y: int):
        self.stream.write(f"{self._goto(y, 0)}{self.CLEAR_LINE}")

    def refresh(self):
        self.stream.flush()


class ScreenRenderer(Renderer):
    """Draw overlays on a Screen: the text on row 0, the prompt on row 1"""

    def __init__(self, screen: Screen):
        self.screen = screen

    def show(self, text: str, spans: Sequence[Span], prompt: str):
        self.screen.clear_line(0)
        kinds = style_at(spans, len(text))
        x = 0
        start = 0
        for end in range(1, len(text) + 1):
            if end == len(text) or kinds[end] != kinds[start]:
                run = text[start:end]
                self.screen.addstr(0, x, run, kinds[start])
                x += get_string_width(run)
                start = end

        self.screen.clear_line(1)
        if prompt:
            self.screen.addstr(1, 0, prompt, self.screen.A_PROMPT)

    def redraw(self):
        self.screen.refresh()


USAGE = "usage: easyjump {word|end|search} [BUFFER [CURSOR]]"


def main(argv: List[str], tty_path: str = "/dev/tty", out=None) -> int:
    """Jump within BUFFER and print the new 0-based cursor to stdout"""
    out = out or sys.stdout
    if len(argv) < 2 or argv[1] not in MODES:
        logging.error(f"Invalid arguments: {argv[1:]}")
        print(USAGE, file=sys.stderr)
        return 2
    mode = argv[1]
    buffer = argv[2] if len(argv) > 2 else ""
    try:
        cursor = int(argv[3]) if len(argv) > 3 else len(buffer)
    except ValueError:
        print(USAGE, file=sys.stderr)
        return 2

    config = Config.from_env()
    new_cursor, outcome = cursor, Failed()
    try:
        with open(tty_path, "w") as terminal:
            screen = AnsiSequence(terminal, config.styles())
            fd = None
            try:
                fd = os.open(tty_path, os.O_RDONLY)
                engine = Engine(TerminalKeyboard(fd), ScreenRenderer(screen), config)
                screen.init()
                new_cursor, outcome = jump_widget(engine, mode, buffer, cursor)
            finally:
                screen.cleanup()
                if fd is not None:
                    os.close(fd)
    finally:
        # The caller always gets a cursor, the original one on errors
        print(new_cursor, file=out)
    return 0 if isinstance(outcome, Resolved) else 1


def cli():
    setup_logging()
    try:
        sys.exit(main(sys.argv))
    except KeyboardInterrupt:
        logging.info("Operation cancelled by user")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Error occurred: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
