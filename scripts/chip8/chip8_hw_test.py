import unittest

from chip8_hw import (
    C8_FONTS, MAX_ROM_SIZE, ROM_START_ADDRESS,
    Framebuffer, Keypad, Memory, MemoryAccessError, RomLoadError, Stack, StackOverflowError, StackUnderflowError,
)


class TestMemory(unittest.TestCase):
    def test_font_is_loaded_at_zero(self):
        mem = Memory()
        self.assertEqual(len(C8_FONTS), 80)
        self.assertEqual(list(mem[0:80]), C8_FONTS)
        self.assertEqual(len(mem), 4096)

    def test_word_is_big_endian(self):
        mem = Memory()
        mem[0x300], mem[0x301] = 0x12, 0x34
        self.assertEqual(mem.word(0x300), 0x1234)

    def test_bytes_are_masked(self):
        mem = Memory()
        mem[0x300] = 0x1FF
        self.assertEqual(mem[0x300], 0xFF)

    def test_out_of_range_access(self):
        mem = Memory()
        with self.assertRaises(MemoryAccessError):
            mem[0x1000]
        with self.assertRaises(MemoryAccessError):
            mem[0x1000] = 1
        with self.assertRaises(MemoryAccessError):
            mem.word(0xFFF)
        with self.assertRaises(MemoryAccessError):
            mem[0xFFE:0x1001] = b"\x01\x02\x03"
        self.assertEqual(mem[0xFFE], 0)

    def test_block_assignment_keeps_size(self):
        mem = Memory()
        with self.assertRaises(ValueError):
            mem[0x300:0x302] = b"\x01\x02\x03"
        self.assertEqual(len(mem), 4096)

    def test_load_rom(self):
        mem = Memory()
        mem.load_rom(b"\x00\xE0")
        self.assertEqual(mem.word(ROM_START_ADDRESS), 0x00E0)
        with self.assertRaises(RomLoadError):
            mem.load_rom(bytes(MAX_ROM_SIZE + 1))
        with self.assertRaises(RomLoadError):
            mem.load_rom(b"")
        self.assertEqual(list(mem[0:80]), C8_FONTS)


class TestStack(unittest.TestCase):
    def test_push_pop(self):
        stack = Stack()
        stack.append(0x202)
        stack.append(0x300)
        self.assertEqual(stack.pop(), 0x300)
        self.assertEqual(stack.pop(), 0x202)

    def test_capacity(self):
        stack = Stack()
        for i in range(12):
            stack.append(0x200 + 2 * i)
        with self.assertRaises(StackOverflowError):
            stack.append(0x400)
        self.assertEqual(len(stack), 12)
        self.assertEqual(stack.addr_list[-1], 0x216)

    def test_underflow(self):
        with self.assertRaises(StackUnderflowError):
            Stack().pop()


class TestFramebuffer(unittest.TestCase):
    def test_xor_and_collision(self):
        fb = Framebuffer()
        self.assertFalse(fb.draw_sprite(10, 5, [0xC0]))
        self.assertTrue(fb[10, 5] and fb[11, 5])
        self.assertTrue(fb.draw_sprite(11, 5, [0x80]))
        self.assertFalse(fb[11, 5])
        self.assertTrue(fb[10, 5])

    def test_draw_marks_dirty_without_pixels(self):
        fb = Framebuffer()
        fb.draw_sprite(0, 0, [0x00])
        self.assertTrue(fb.dirty)

    def test_clear(self):
        fb = Framebuffer()
        fb.draw_sprite(0, 0, [0xFF])
        fb.dirty = False
        fb.clear()
        self.assertFalse(any(fb.buffer))
        self.assertTrue(fb.dirty)

    def test_rows_and_str(self):
        fb = Framebuffer(w=4, h=2)
        fb.draw_sprite(1, 1, [0x80])
        self.assertEqual(list(fb.rows()), [[False] * 4, [False, True, False, False]])
        self.assertEqual(str(fb), "....\n.#..")


class TestKeypad(unittest.TestCase):
    def test_press_release(self):
        keypad = Keypad()
        self.assertIsNone(keypad.first())
        keypad.press(0xC)
        keypad.press(0x3)
        self.assertTrue(keypad[0xC])
        self.assertEqual(keypad.first(), 0x3)
        keypad.release(0x3)
        self.assertEqual(keypad.first(), 0xC)

    def test_unknown_keys_are_up(self):
        keypad = Keypad()
        self.assertFalse(keypad[0x10])
        self.assertFalse(keypad[0xFF])


if __name__ == "__main__":
    unittest.main()
