# CHIP-8 CPU
# fetch/decode/execute cycle, timers and run state of the virtual machine
#
# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite


import logging
import os
import random
from collections import namedtuple
from enum import Enum
from functools import wraps

from chip8_hw import (
    MEMORY_SIZE, NUM_REGISTERS, ROM_START_ADDRESS, FONT_START_ADDRESS, FONT_GLYPH_SIZE,
    Framebuffer, Keypad, MachineFault, Memory, MemoryAccessError, RomLoadError, Stack,
)


log = logging.getLogger(__name__)

TICK_RATE = 60                  # timers and frames per second
DEFAULT_IPS = 600               # instructions per second

# shift_by_vy: shift Vx by the value held in Vy and take VF from Vy, instead of shifting Vx by one
# key_release: Fx0A completes only once the captured key goes up again
Quirks = namedtuple("Quirks", "shift_by_vy key_release", defaults=(False, True))


class State(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    HALTED = "halted"


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to log the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].pc - 0x2     # pc already points past the decorated instruction
            vals = fn(*args, **kwargs)      # use the locals() values of each decorated function in the message
            if log.isEnabledFor(logging.DEBUG):
                vals['mem_addr'] = mem_addr
                log.debug(msg.format(**vals))
        return wrapper_fn
    return decorator

def cycles_per_frame(ips=DEFAULT_IPS, tick_rate=TICK_RATE):
    return max(1, ips // tick_rate)


# ******************** DECODER SECTION
class Instruction(namedtuple("Instruction", "opcode nnn nn n x y")):
    """fields of a 16 bit opcode, named after the usual nnn/nn/n/x/y notation"""
    __slots__ = ()

    @property
    def family(self):
        return self.opcode >> 12

def decode(opcode):
    return Instruction(
        opcode,
        opcode & 0x0FFF,            # address
        opcode & 0x00FF,            # 8 bit immediate
        opcode & 0x000F,            # 4 bit immediate
        (opcode & 0x0F00) >> 8,     # register x
        (opcode & 0x00F0) >> 4,     # register y
    )


# ******************** CPU SECTION
class Chip8:
    def __init__(self, quirks=None, rng=None):
        self.mem = Memory()
        self.stack = Stack()
        self.v_regs = [0] * NUM_REGISTERS
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.screen = Framebuffer()
        self.keypad = Keypad()
        self.quirks = quirks or Quirks()
        self.rng = rng or random.Random()
        self.state = State.RUNNING
        self.rom_name = None
        self.inst = None
        # Fx0A spans several cycles: remember the captured key between them
        self.pending_key = None
        self.awaiting_release = False
        # one entry for each of the 16 families, sub-opcodes are looked up in the tables below
        self.families = {
            0x0: self._sys_family,
            0x1: self._jump,
            0x2: self._call_addr,
            0x3: self._skip_if_eq,
            0x4: self._skip_if_not_eq,
            0x5: self._regs_family,
            0x6: self._set_vk,
            0x7: self._add_to_vk,
            0x8: self._alu_family,
            0x9: self._regs_family,
            0xA: self._set_idx,
            0xB: self._jump_plus,
            0xC: self._random_byte_and,
            0xD: self._to_screen,
            0xE: self._key_family,
            0xF: self._misc_family,
        }
        self.sys_ops = {
            0xE0: self._clear_screen,
            0xEE: self._return,
        }
        self.alu_ops = {
            0x0: self._set_vx_to_vy,
            0x1: self._set_vx_or_vy,
            0x2: self._set_vx_and_vy,
            0x3: self._set_vx_xor_vy,
            0x4: self._add_vx_vy,
            0x5: self._sub_vx_vy,
            0x6: self._shr,
            0x7: self._subn_vx_vy,
            0xE: self._shl,
        }
        self.key_ops = {
            0x9E: self._skip_if_pressed,
            0xA1: self._skip_if_not_pressed,
        }
        self.misc_ops = {
            0x07: self._set_vx_dt,
            0x0A: self._wait_keypress,
            0x15: self._set_dt_vx,
            0x18: self._set_st,
            0x1E: self._add_to_idx,
            0x29: self._select_char,
            0x33: self._bcd_repr,
            0x55: self._store_vregs,
            0x65: self._load_vregs,
        }

    def __str__(self):
        state = f"STATE:{self.state.name} | ROM:{self.rom_name}"
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        timers = f"DT:{self.dt} | ST:{self.st}"
        stack = f"STACK:{self.stack}"
        keypad = f"KEYPAD:{self.keypad} | PENDING_KEY:{self.pending_key}"
        flags = f"DRAW: {self.screen.dirty}"
        return f"{state}\n{registers}\n{timers}\n{stack}\n{keypad}\n{flags}"

    # ********** LIFECYCLE
    def load_rom(self, path):
        """load ROM file from the given path, halt the machine and raise RomLoadError otherwise"""
        try:
            with open(path, mode='rb') as f:
                rom = f.read()
        except OSError as err:
            self.halt()
            log.error("ROM file %s is invalid or does not exist: %s", path, err)
            raise RomLoadError(f"ROM file {path} is invalid or does not exist") from err
        self.load_rom_bytes(rom, name=os.path.basename(path))

    def load_rom_bytes(self, rom, name="<bytes>"):
        try:
            self.mem.load_rom(bytes(rom))
        except RomLoadError as err:
            self.halt()
            log.error("Could not load ROM %s into CHIP-8 memory: %s", name, err)
            raise
        self.rom_name = name
        log.info("The ROM %s (%d bytes) has been loaded successfully", name, len(rom))

    def toggle_pause(self):
        if self.state is State.RUNNING:
            self.state = State.PAUSED
            log.info("PAUSED")
        elif self.state is State.PAUSED:
            self.state = State.RUNNING
            log.info("RESUMED")
        return self.state

    def quit(self):
        self.halt()

    def halt(self):
        if self.state is not State.HALTED:
            log.info("machine halted at 0x%04x", self.pc)
        self.state = State.HALTED

    @property
    def running(self):
        return self.state is State.RUNNING

    # ********** TIMERS
    @property
    def audio_active(self):
        return self.st > 0

    def tick(self):
        """decrement delay/sound timers (dt/st), meant to be called 60 times per second"""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1
        return self.audio_active

    # ********** OPCODES
    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{x}")
    def _skip_if_pressed(self, inst):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        x = inst.x
        key = self.v_regs[x]
        if self.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{x}")
    def _skip_if_not_pressed(self, inst):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        x = inst.x
        key = self.v_regs[x]
        if not self.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, K")
    def _wait_keypress(self, inst):
        """wait for a key press (and release, with the key_release quirk) and store its value in Vx"""
        x = inst.x
        if self.pending_key is None:
            self.pending_key = self.keypad.first()
            if self.pending_key is None:
                self._stay_on_instruction()
                return locals()
            self.awaiting_release = self.quirks.key_release
        if self.awaiting_release and self.keypad[self.pending_key]:
            self._stay_on_instruction()
            return locals()
        self.v_regs[x] = self.pending_key
        self.pending_key = None
        self.awaiting_release = False
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, DT")
    def _set_vx_dt(self, inst):
        """set Vx = DT (delay timer) value"""
        x = inst.x
        self.v_regs[x] = self.dt
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{x}")
    def _set_dt_vx(self, inst):
        """set DT (delay timer) = Vx"""
        x = inst.x
        self.dt = self.v_regs[x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, inst):
        self.screen.clear()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, inst):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump(self, inst):
        address = inst.nnn
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:04x}")
    def _call_addr(self, inst):
        address = inst.nnn
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, {comparison_value}")
    def _skip_if_eq(self, inst):
        x, comparison_value = inst.x, inst.nn
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, {comparison_value}")
    def _skip_if_not_eq(self, inst):
        x, comparison_value = inst.x, inst.nn
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, V{y}")
    def _skip_if_eq_regs(self, inst):
        x, y = inst.x, inst.y
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, V{y}")
    def _skip_if_not_eq_regs(self, inst):
        x, y = inst.x, inst.y
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, {value}")
    def _set_vk(self, inst):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = inst.x, inst.nn
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, {value}")
    def _add_to_vk(self, inst):
        """add to the value already present in one of the variable registers, VF is left alone"""
        x, value = inst.x, inst.nn
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits from the result
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, V{y}")
    def _set_vx_to_vy(self, inst):
        """set the value of Vx equal to that of Vy"""
        x, y = inst.x, inst.y
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x}, V{y}")
    def _set_vx_or_vy(self, inst):
        """set the value of Vx to Vx OR Vy"""
        x, y = inst.x, inst.y
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x}, V{y}")
    def _set_vx_and_vy(self, inst):
        """set the value of Vx to Vx AND Vy"""
        x, y = inst.x, inst.y
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x}, V{y}")
    def _set_vx_xor_vy(self, inst):
        """set the value of Vx to Vx XOR Vy"""
        x, y = inst.x, inst.y
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    # the flag is always written after the result, so VF holds the flag when x is F
    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, V{y}")
    def _add_vx_vy(self, inst):
        """set the value of Vx to Vx + Vy, VF = carry"""
        x, y = inst.x, inst.y
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF
        self.v_regs[0xF] = 1 if total > 255 else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x}, V{y}")
    def _sub_vx_vy(self, inst):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        x, y = inst.x, inst.y
        no_borrow = 1 if self.v_regs[x] >= self.v_regs[y] else 0
        self.v_regs[x] = (self.v_regs[x] - self.v_regs[y]) & 0xFF
        self.v_regs[0xF] = no_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x}, V{y}")
    def _subn_vx_vy(self, inst):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        x, y = inst.x, inst.y
        no_borrow = 1 if self.v_regs[y] >= self.v_regs[x] else 0
        self.v_regs[x] = (self.v_regs[y] - self.v_regs[x]) & 0xFF
        self.v_regs[0xF] = no_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x}, V{y}")
    def _shr(self, inst):
        """set Vx equal to Vx SHR 1, VF = bit shifted out"""
        x, y = inst.x, inst.y
        if self.quirks.shift_by_vy:
            lsb = self.v_regs[y] & 0x1
            result = self.v_regs[x] >> self.v_regs[y]
        else:
            lsb = self.v_regs[x] & 0x1
            result = self.v_regs[x] >> 1
        self.v_regs[x] = result
        self.v_regs[0xF] = lsb
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x}, V{y}")
    def _shl(self, inst):
        """set Vx equal to Vx SHL 1, VF = bit shifted out"""
        x, y = inst.x, inst.y
        if self.quirks.shift_by_vy:
            msb = (self.v_regs[y] & 0x80) >> 7
            result = (self.v_regs[x] << self.v_regs[y]) & 0xFF
        else:
            msb = (self.v_regs[x] & 0x80) >> 7
            result = (self.v_regs[x] << 1) & 0xFF   # multiply by 2 and keep only the lowest 8 bits
        self.v_regs[x] = result
        self.v_regs[0xF] = msb
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{value:04x}")
    def _set_idx(self, inst):
        """set the value of the I register"""
        value = inst.nnn
        self.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{address:04x}")
    def _jump_plus(self, inst):
        address = inst.nnn
        v0 = self.v_regs[0x0]
        self.pc = address + v0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x}, 0x{kk:02x}")
    def _random_byte_and(self, inst):
        x, kk = inst.x, inst.nn
        rnd = self.rng.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x}, V{y}, {n_bytes}")
    def _to_screen(self, inst):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y, n_bytes = inst.x, inst.y, inst.n
        sprite = self.mem[self.idx:self.idx+n_bytes]
        collision = self.screen.draw_sprite(self.v_regs[x], self.v_regs[y], sprite)
        self.v_regs[0xF] = 1 if collision else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{register}")
    def _set_st(self, inst):
        """set ST = Vx"""
        register = inst.x
        self.st = self.v_regs[register]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{register}")
    def _add_to_idx(self, inst):
        """set I = I + Vx, VF is left alone"""
        register = inst.x
        self.idx = (self.idx + self.v_regs[register]) & 0xFFFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{register}")
    def _select_char(self, inst):
        """set I to location of sprite for digit Vx"""
        register = inst.x
        self.idx = FONT_START_ADDRESS + self.v_regs[register] * FONT_GLYPH_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x}")
    def _bcd_repr(self, inst):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        x = inst.x
        hundreds, rest = divmod(self.v_regs[x], 100)
        tens, ones = divmod(rest, 10)
        self.mem[self.idx:self.idx+3] = bytes((hundreds, tens, ones))
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x}")
    def _store_vregs(self, inst):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = inst.x
        self.mem[self.idx:self.idx+x+1] = bytes(self.v_regs[:x+1])
        self.idx = (self.idx + x + 1) & 0xFFFF      # compatibility quirk 6
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, [I]")
    def _load_vregs(self, inst):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = inst.x
        self.v_regs[:x+1] = list(self.mem[self.idx:self.idx+x+1])
        self.idx = (self.idx + x + 1) & 0xFFFF      # compatibility quirk 6
        return locals()

    def _unknown(self, inst):
        """opcodes outside the instruction set are skipped"""
        log.debug("mem_addr: 0x%04x    unknown opcode 0x%04x ignored", self.pc - 0x2, inst.opcode)

    # ********** DISPATCH
    def _sys_family(self, inst):
        # 0nnn (call to machine code routine) is ignored like on every modern interpreter
        self.sys_ops.get(inst.nn, self._unknown)(inst)

    def _regs_family(self, inst):
        # 5xy0 and 9xy0 only exist with a zero low nibble
        if inst.n != 0:
            self._unknown(inst)
        elif inst.family == 0x5:
            self._skip_if_eq_regs(inst)
        else:
            self._skip_if_not_eq_regs(inst)

    def _alu_family(self, inst):
        self.alu_ops.get(inst.n, self._unknown)(inst)

    def _key_family(self, inst):
        self.key_ops.get(inst.nn, self._unknown)(inst)

    def _misc_family(self, inst):
        self.misc_ops.get(inst.nn, self._unknown)(inst)

    def _goto_next_instruction(self):
        self.pc = (self.pc + 0x2) & 0xFFFF

    def _stay_on_instruction(self):
        self.pc -= 0x2      # fetch this same instruction again on the next cycle

    def fetch(self):
        """read the 2 bytes opcode at pc, most significant byte first"""
        if not 0 <= self.pc <= MEMORY_SIZE - 2:
            raise MemoryAccessError(f"program counter 0x{self.pc:04x} is outside the 4KB memory")
        return self.mem.word(self.pc)

    def cycle(self):
        """
        emulate one machine cycle (fetch opcode, decode opcode, execute opcode)
        return the decoded instruction, or None when the machine is halted
        a MachineFault halts the machine before being raised again
        """
        if self.state is State.HALTED:
            return None
        try:
            opcode = self.fetch()
            self._goto_next_instruction()   # each instruction is two bytes long
            self.inst = decode(opcode)
            self.families[self.inst.family](self.inst)
        except MachineFault as fault:
            log.error("mem_addr: 0x%04x    %s", self.pc, fault)
            self.halt()
            raise
        return self.inst

    def run_frame(self, cycles=None):
        """
        run one 60Hz frame: up to `cycles` instructions, then one timers tick
        the frame ends right after a draw instruction, so the screen is refreshed at most once per frame
        nothing happens unless the machine is running, return the number of executed instructions
        """
        if self.state is not State.RUNNING:
            return 0
        if cycles is None:
            cycles = cycles_per_frame()
        executed = 0
        for _ in range(cycles):
            inst = self.cycle()
            executed += 1
            if inst.family == 0xD:
                break
        self.tick()
        return executed
