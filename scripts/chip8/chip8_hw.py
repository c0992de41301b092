# CHIP-8 HARDWARE MODEL
# memory, call stack, framebuffer and keypad latch of the virtual machine,
# along with the faults they can raise. Nothing in here knows about pygame:
# the host in chip8.py reads the framebuffer and writes the keypad.
#
# TECHNICAL REFERENCE
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

FONT_START_ADDRESS = 0x000
FONT_GLYPH_SIZE = 5
MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_CAPACITY = 12
NUM_REGISTERS = 16
NUM_KEYS = 16
SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32


# ******************** FAULTS SECTION
class MachineFault(Exception):
    """base class for every condition that stops the machine"""

class RomLoadError(MachineFault):
    pass

class StackOverflowError(MachineFault):
    pass

class StackUnderflowError(MachineFault):
    pass

class MemoryAccessError(MachineFault):
    pass


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 12 ADDRESSES
class Stack:
    def __init__(self, capacity=STACK_CAPACITY):
        self.addr_list = []
        self.capacity = capacity

    def __len__(self):
        return len(self.addr_list)

    def __repr__(self):
        return "[" + ", ".join(f"0x{a:03x}" for a in self.addr_list) + "]"

    def append(self, address):
        if len(self.addr_list) >= self.capacity:
            raise StackOverflowError(
                f"The CHIP-8 stack can contain at most {self.capacity} addresses. "
                f"Limit exceeded while pushing 0x{address:04x}"
            )
        self.addr_list.append(address & 0xFFFF)

    def pop(self):
        if not self.addr_list:
            raise StackUnderflowError("Return executed with an empty CHIP-8 stack")
        return self.addr_list.pop()

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    def __len__(self):
        return len(self.inner)

    def __getitem__(self, index):
        if isinstance(index, slice):
            self._check(index.start, index.stop - index.start)
        else:
            self._check(index, 1)
        return self.inner[index]

    def __setitem__(self, key, value):
        if isinstance(key, slice):
            # the slice must be exactly as long as the data, a bytearray would grow otherwise
            self._check(key.start, key.stop - key.start)
            if len(value) != key.stop - key.start:
                raise ValueError("memory block assignment must keep the memory size")
        else:
            self._check(key, 1)
            value &= 0xFF
        self.inner[key] = value

    def _check(self, address, length):
        if address < 0 or address + length > MEMORY_SIZE:
            raise MemoryAccessError(
                f"access of {length} byte(s) at 0x{address:04x} is outside the 4KB memory"
            )

    def word(self, address):
        """return the big endian 16 bit word starting at address"""
        self._check(address, 2)
        return self.inner[address] << 8 | self.inner[address + 1]

    def load_rom(self, rom):
        """copy the ROM bytes at the entry point, leaving the font area alone"""
        if not rom:
            raise RomLoadError("ROM is empty")
        if len(rom) > MAX_ROM_SIZE:
            raise RomLoadError(
                f"ROM is too big: {len(rom)} bytes, max size allowed {MAX_ROM_SIZE} bytes"
            )
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom


# ******************** I/O SECTION
class Framebuffer:
    """
    64x32 monochrome display stored row major, index = y * w + x
    the machine only ever XORs cells; turning cells into colors is up to the renderer,
    which is also the one clearing the dirty flag once it has drawn the buffer
    """
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * h * w
        self.dirty = False

    def __getitem__(self, xy):
        x, y = xy
        return self.buffer[y * self.w + x]

    def clear(self):
        self.buffer = [False] * self.h * self.w
        self.dirty = True

    def xor_pixel(self, x, y):
        """flip a pixel, return True if the pixel was ON (a collision)"""
        i = y * self.w + x
        was_on = self.buffer[i]
        self.buffer[i] = not was_on
        return was_on

    def draw_sprite(self, x, y, rows):
        """
        XOR the sprite rows at (x, y), return True if any pixel got erased
        the start position wraps around the screen, the sprite itself is clipped at the edges
        """
        x, y = x % self.w, y % self.h
        collision = False
        for i, sprite_byte in enumerate(rows):
            if y + i >= self.h:
                break
            for j in range(8):
                if x + j >= self.w:
                    break
                if sprite_byte & (0x80 >> j):
                    collision |= self.xor_pixel(x + j, y + i)
        self.dirty = True
        return collision

    def rows(self):
        """yield the screen content one row at a time"""
        for y in range(self.h):
            yield self.buffer[y * self.w:(y + 1) * self.w]

    def __str__(self):
        return "\n".join("".join("#" if p else "." for p in row) for row in self.rows())

class Keypad:
    """16 keys hex keypad (0x0-0xF), the host presses and releases keys between cycles"""
    def __init__(self):
        self.keys = [False] * NUM_KEYS

    def __getitem__(self, key):
        if 0 <= key < NUM_KEYS:
            return self.keys[key]
        return False

    def __setitem__(self, key, value):
        self.keys[key] = bool(value)

    def __repr__(self):
        down = [f"{k:X}" for k in range(NUM_KEYS) if self.keys[k]]
        return "{" + ",".join(down) + "}"

    def press(self, key):
        self[key] = True

    def release(self, key):
        self[key] = False

    def first(self):
        """get the lowest key currently down, None if no key is down"""
        for k in range(NUM_KEYS):
            if self.keys[k]:
                return k
        return None
