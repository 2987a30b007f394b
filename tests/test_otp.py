import unittest
from otp import CODE_LENGTH, CodeBuffer, CodeEntryProtocol


class TestCodeEntryProtocol(unittest.TestCase):

    def setUp(self):
        self.completed = []
        self.otp = CodeEntryProtocol(on_complete=self.completed.append)

    def test_digit_writes_and_moves_focus(self):
        self.otp.on_digit(0, "7")
        self.assertEqual(self.otp.buffer.cells[0], "7")
        self.assertEqual(self.otp.focus, 1)

    def test_non_digit_is_ignored(self):
        self.otp.on_digit(0, "a")
        self.assertEqual(self.otp.buffer.cells[0], "")
        self.assertEqual(self.otp.focus, 0)

    def test_multi_character_input_keeps_last_digit(self):
        self.otp.on_digit(2, "45")
        self.assertEqual(self.otp.buffer.cells[2], "5")

    def test_empty_input_clears_cell(self):
        self.otp.on_digit(0, "1")
        self.otp.on_digit(0, "")
        self.assertEqual(self.otp.buffer.cells[0], "")

    def test_digit_in_last_cell_keeps_focus(self):
        self.otp.on_digit(CODE_LENGTH - 1, "3")
        self.assertEqual(self.otp.focus, CODE_LENGTH - 1)

    def test_backspace_on_filled_cell(self):
        self.otp.on_paste(0, "123")
        self.otp.on_backspace(1)
        self.assertEqual(self.otp.buffer.cells[:3], ["1", "", "3"])
        self.assertEqual(self.otp.focus, 1)

    def test_backspace_on_empty_cell_clears_previous(self):
        self.otp.on_paste(0, "12")
        self.otp.on_backspace(2)
        self.assertEqual(self.otp.buffer.cells[:3], ["1", "", ""])
        self.assertEqual(self.otp.focus, 1)

    def test_backspace_on_empty_first_cell(self):
        self.otp.on_backspace(0)
        self.assertEqual(self.otp.code, "")
        self.assertEqual(self.otp.focus, 0)

    def test_arrows_stay_in_bounds(self):
        self.otp.on_arrow(0, -1)
        self.assertEqual(self.otp.focus, 0)
        self.otp.on_arrow(0, 1)
        self.assertEqual(self.otp.focus, 1)
        self.otp.focus = CODE_LENGTH - 1
        self.otp.on_arrow(CODE_LENGTH - 1, 1)
        self.assertEqual(self.otp.focus, CODE_LENGTH - 1)

    def test_paste_strips_non_digits(self):
        self.otp.on_paste(0, "12-34 56")
        self.assertEqual(self.otp.code, "123456")
        self.assertEqual(self.otp.focus, CODE_LENGTH - 1)
        self.assertEqual(self.completed, ["123456"])

    def test_paste_truncates_overflow(self):
        self.otp.on_paste(3, "98765")
        self.assertEqual(self.otp.buffer.cells, ["", "", "", "9", "8", "7"])
        self.assertEqual(self.otp.focus, CODE_LENGTH - 1)
        self.assertEqual(self.completed, [])

    def test_partial_paste_focus_on_last_written(self):
        self.otp.on_paste(1, "42")
        self.assertEqual(self.otp.focus, 2)

    def test_only_ascii_digits_are_accepted(self):
        # Арабсько-індійські та деванагарі цифри не є цифрами коду
        self.otp.on_paste(0, "١٢٣٤٥٦")
        self.otp.on_paste(0, "१२३")
        self.otp.on_digit(0, "١")
        self.assertEqual(self.otp.code, "")
        self.assertEqual(self.completed, [])
        self.assertEqual(CodeBuffer(2, ["١", "2"]).cells, ["", "2"])

    def test_paste_without_digits_is_ignored(self):
        self.otp.on_paste(0, "abc")
        self.assertEqual(self.otp.code, "")
        self.assertEqual(self.otp.focus, 0)

    def test_out_of_range_index_is_ignored(self):
        self.otp.on_digit(CODE_LENGTH, "1")
        self.otp.on_paste(-1, "123")
        self.otp.on_backspace(99)
        self.assertEqual(self.otp.code, "")

    def test_completion_is_edge_triggered(self):
        for i, d in enumerate("12345"):
            self.otp.on_digit(i, d)
        self.assertEqual(self.completed, [])
        self.otp.on_digit(5, "6")
        self.assertEqual(self.completed, ["123456"])

        # Перезапис у заповненому буфері не викликає повторно
        self.otp.on_digit(5, "7")
        self.assertEqual(len(self.completed), 1)

        # Після того як буфер став неповним - знову спрацьовує
        self.otp.on_backspace(5)
        self.otp.on_digit(5, "8")
        self.assertEqual(self.completed, ["123456", "123458"])

    def test_restored_full_buffer_does_not_fire(self):
        otp = CodeEntryProtocol(on_complete=self.completed.append, cells=list("123456"), focus=5)
        self.assertTrue(otp.is_filled)
        otp.on_digit(5, "9")
        self.assertEqual(self.completed, [])

    def test_clear_resets(self):
        self.otp.on_paste(0, "123456")
        self.otp.clear()
        self.assertEqual(self.otp.code, "")
        self.assertEqual(self.otp.focus, 0)
        self.otp.on_paste(0, "654321")
        self.assertEqual(self.completed, ["123456", "654321"])


class TestCodeBuffer(unittest.TestCase):

    def test_invalid_cells_are_dropped(self):
        buf = CodeBuffer(4, ["1", "x", "22", "3"])
        self.assertEqual(buf.cells, ["1", "", "", "3"])
        self.assertFalse(buf.is_filled)

    def test_length_must_be_positive(self):
        with self.assertRaises(ValueError):
            CodeBuffer(0)

if __name__ == '__main__':
    unittest.main()
