import unittest

from fakes import ByteScript, byte_script
from keybindings import KEYS, Key, KeyDecoder, KeyEvent


class KeyDecoderTests(unittest.TestCase):
    def decode(self, data):
        decoder = KeyDecoder(byte_script(data), escape_timeout=0.01)
        return decoder.read_key()

    def test_arrow_keys(self):
        self.assertIs(self.decode(b"\x1b[A").kind, Key.UP)
        self.assertIs(self.decode(b"\x1b[B").kind, Key.DOWN)
        self.assertIs(self.decode(b"\x1b[C").kind, Key.RIGHT)
        self.assertIs(self.decode(b"\x1b[D").kind, Key.LEFT)

    def test_home_end_variants(self):
        for data in (b"\x1b[H", b"\x1bOH", b"\x1b[1~", b"\x1b[7~"):
            self.assertIs(self.decode(data).kind, Key.HOME, data)
        for data in (b"\x1b[F", b"\x1bOF", b"\x1b[4~", b"\x1b[8~"):
            self.assertIs(self.decode(data).kind, Key.END, data)

    def test_tilde_keys(self):
        self.assertIs(self.decode(b"\x1b[2~").kind, Key.INSERT)
        self.assertIs(self.decode(b"\x1b[3~").kind, Key.DELETE)
        self.assertIs(self.decode(b"\x1b[5~").kind, Key.PAGE_UP)
        self.assertIs(self.decode(b"\x1b[6~").kind, Key.PAGE_DOWN)

    def test_function_keys(self):
        f1 = self.decode(b"\x1bOP")
        self.assertEqual((f1.kind, f1.number), (Key.FUNCTION, 1))
        f5 = self.decode(b"\x1b[15~")
        self.assertEqual((f5.kind, f5.number), (Key.FUNCTION, 5))
        f12 = self.decode(b"\x1b[24~")
        self.assertEqual((f12.kind, f12.number), (Key.FUNCTION, 12))

    def test_modified_arrow_ignores_modifier(self):
        self.assertIs(self.decode(b"\x1b[1;5A").kind, Key.UP)

    def test_lone_escape_returns_after_timeout(self):
        source = ByteScript([b"\x1b", None])
        decoder = KeyDecoder(source, escape_timeout=0.05)
        key = decoder.read_key()
        self.assertIs(key.kind, Key.ESCAPE)
        self.assertEqual(source.timeouts[-1], 0.05)

    def test_escape_followed_by_letter_is_two_keys(self):
        decoder = KeyDecoder(byte_script(b"\x1bq"), escape_timeout=0.01)
        self.assertIs(decoder.read_key().kind, Key.ESCAPE)
        second = decoder.read_key()
        self.assertEqual((second.kind, second.char), (Key.CHAR, "q"))

    def test_enter_backspace_tab(self):
        self.assertIs(self.decode(b"\r").kind, Key.ENTER)
        self.assertIs(self.decode(b"\n").kind, Key.ENTER)
        self.assertIs(self.decode(b"\x7f").kind, Key.BACKSPACE)
        self.assertIs(self.decode(b"\x08").kind, Key.BACKSPACE)
        self.assertIs(self.decode(b"\t").kind, Key.TAB)

    def test_ctrl_c_raises_keyboard_interrupt(self):
        with self.assertRaises(KeyboardInterrupt):
            self.decode(b"\x03")

    def test_utf8_character(self):
        key = self.decode("é".encode("utf-8"))
        self.assertEqual((key.kind, key.char), (Key.CHAR, "é"))

    def test_unknown_sequence(self):
        self.assertIs(self.decode(b"\x1b[99~").kind, Key.UNKNOWN)

    def test_timeout_without_input(self):
        decoder = KeyDecoder(ByteScript([]), escape_timeout=0.01)
        self.assertIsNone(decoder.read_key(timeout=0.1))


class KeybindingTests(unittest.TestCase):
    def test_navigation_bindings(self):
        self.assertTrue(KeyEvent(Key.UP).matches(KEYS.NAV_UP))
        self.assertTrue(KeyEvent(Key.CHAR, b"k", "k").matches(KEYS.NAV_UP))
        self.assertTrue(KeyEvent(Key.CHAR, b"j", "j").matches(KEYS.NAV_DOWN))
        self.assertFalse(KeyEvent(Key.CHAR, b"x", "x").matches(KEYS.NAV_DOWN))

    def test_quit_accepts_escape_and_q(self):
        self.assertTrue(KeyEvent(Key.ESCAPE).matches(KEYS.QUIT))
        self.assertTrue(KeyEvent(Key.CHAR, b"q", "q").matches(KEYS.QUIT))


if __name__ == "__main__":
    unittest.main()
