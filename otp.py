import re
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


class CodeBuffer:
    """Фіксований набір комірок для одноразового коду. Кожна комірка - одна цифра або порожня."""

    def __init__(self, length: int = CODE_LENGTH, cells: Optional[List[str]] = None):
        if length <= 0:
            raise ValueError("length повинен бути більше 0")
        self.length = length
        self.cells = [""] * length
        if cells:
            for i, value in enumerate(cells[:length]):
                self.cells[i] = value if re.fullmatch(r"[0-9]", value or "") else ""

    @property
    def code(self) -> str:
        return "".join(self.cells)

    @property
    def is_filled(self) -> bool:
        return all(self.cells)


class CodeEntryProtocol:
    """
    Введення коду по комірках: цифри, backspace, стрілки, вставка з буфера обміну.
    on_complete викликається по фронту: один раз при заповненні, повторно - лише
    після того, як буфер знову став неповним і знову заповнився.
    """

    def __init__(
        self,
        length: int = CODE_LENGTH,
        on_complete: Optional[Callable[[str], None]] = None,
        cells: Optional[List[str]] = None,
        focus: int = 0,
    ):
        self.buffer = CodeBuffer(length, cells)
        self.on_complete = on_complete
        self.focus = min(max(focus, 0), length - 1)
        # Відновлений заповнений буфер вважається вже сповіщеним
        self._fired = self.buffer.is_filled

    @property
    def code(self) -> str:
        return self.buffer.code

    @property
    def is_filled(self) -> bool:
        return self.buffer.is_filled

    def _in_range(self, index: int) -> bool:
        return 0 <= index < self.buffer.length

    def _after_write(self) -> None:
        if self.buffer.is_filled:
            if not self._fired:
                self._fired = True
                logger.debug("Code buffer filled")
                if self.on_complete is not None:
                    self.on_complete(self.buffer.code)
        else:
            self._fired = False

    def on_digit(self, index: int, char: str) -> None:
        if not self._in_range(index):
            return
        char = char or ""
        if not char:
            if not self.buffer.cells[index]:
                return
            self.buffer.cells[index] = ""
            self._after_write()
            return

        # Приймається лише одна цифра [0-9]; інше ігнорується
        digits = re.sub(r"[^0-9]", "", char)
        if not digits:
            return

        self.buffer.cells[index] = digits[-1]
        if index < self.buffer.length - 1:
            self.focus = index + 1
        else:
            self.focus = index
        self._after_write()

    def on_backspace(self, index: int) -> None:
        if not self._in_range(index):
            return
        if not self.buffer.cells[index] and index > 0:
            self.buffer.cells[index - 1] = ""
            self.focus = index - 1
        else:
            self.buffer.cells[index] = ""
            self.focus = index
        self._after_write()

    def on_arrow(self, index: int, direction: int) -> None:
        target = index + (1 if direction > 0 else -1)
        if self._in_range(target):
            self.focus = target

    def on_paste(self, index: int, text: str) -> None:
        if not self._in_range(index):
            return
        digits = re.sub(r"[^0-9]", "", text or "")
        if not digits:
            return

        # Зайве обрізається мовчки
        chunk = digits[: self.buffer.length - index]
        for offset, digit in enumerate(chunk):
            self.buffer.cells[index + offset] = digit

        self.focus = min(index + len(chunk) - 1, self.buffer.length - 1)
        self._after_write()

    def clear(self) -> None:
        self.buffer.cells = [""] * self.buffer.length
        self.focus = 0
        self._fired = False
