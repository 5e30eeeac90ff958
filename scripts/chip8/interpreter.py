# CHIP-8 VIRTUAL MACHINE CORE
# the fetch/decode/execute engine and its state, with no I/O and no notion of time:
# the host drives it by calling step() and tick_timers() at its own cadence
#
# INSTRUCTION SET REFERENCE
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM


import random
from enum import Enum, unique
from typing import NamedTuple


# ******************** STATIC SECTION
C8_FONTS = (0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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
            0xF0, 0x80, 0xF0, 0x80, 0x80)  # F

MEMORY_SIZE = 4096
PROGRAM_START = 0x200
FONT_BASE = 0x50
GLYPH_SIZE = 5
SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32
NUM_REGISTERS = 16
NUM_KEYS = 16
FLAG_REGISTER = 0xF
INSTRUCTION_SIZE = 2


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error raised by the virtual machine"""


class CapacityError(Chip8Error):
    """the ROM does not fit in the program region, memory has not been touched"""
    def __init__(self, size, capacity):
        super().__init__(f"ROM of {size} bytes exceeds the {capacity} bytes available for programs")
        self.size = size
        self.capacity = capacity


class StackUnderflow(Chip8Error):
    """return from subroutine executed with an empty call stack"""
    def __init__(self):
        super().__init__("Attempted to return from a subroutine with an empty call stack")


class UnimplementedOpcode(Chip8Error):
    """no instruction matches the fetched nibbles"""
    def __init__(self, nibbles):
        self.nibbles = tuple(nibbles)
        opcode = "".join(f"{n:X}" for n in self.nibbles)
        super().__init__(f"The opcode 0x{opcode} ({self.nibbles}) is not implemented")


# ******************** INSTRUCTION SECTION
@unique
class Op(Enum):
    CLS = "CLS"
    RET = "RET"
    SYS = "SYS 0x{nnn:03x}"
    JP = "JP 0x{nnn:03x}"
    CALL = "CALL 0x{nnn:03x}"
    SE = "SE V{x:X}, 0x{kk:02x}"
    SNE = "SNE V{x:X}, 0x{kk:02x}"
    SE_REG = "SE V{x:X}, V{y:X}"
    LD = "LD V{x:X}, 0x{kk:02x}"
    ADD = "ADD V{x:X}, 0x{kk:02x}"
    LD_REG = "LD V{x:X}, V{y:X}"
    OR = "OR V{x:X}, V{y:X}"
    AND = "AND V{x:X}, V{y:X}"
    XOR = "XOR V{x:X}, V{y:X}"
    ADD_REG = "ADD V{x:X}, V{y:X}"
    SUB = "SUB V{x:X}, V{y:X}"
    SHR = "SHR V{x:X}"
    SUBN = "SUBN V{x:X}, V{y:X}"
    SHL = "SHL V{x:X}"
    SNE_REG = "SNE V{x:X}, V{y:X}"
    LD_I = "LD I, 0x{nnn:03x}"
    JP_V0 = "JP V0, 0x{nnn:03x}"
    RND = "RND V{x:X}, 0x{kk:02x}"
    DRW = "DRW V{x:X}, V{y:X}, {n}"
    SKP = "SKP V{x:X}"
    SKNP = "SKNP V{x:X}"
    LD_VX_DT = "LD V{x:X}, DT"
    LD_VX_K = "LD V{x:X}, K"
    LD_DT = "LD DT, V{x:X}"
    LD_ST = "LD ST, V{x:X}"
    ADD_I = "ADD I, V{x:X}"
    LD_F = "LD F, V{x:X}"
    LD_B = "LD B, V{x:X}"
    LD_MEM = "LD [I], V{x:X}"
    LD_REGS = "LD V{x:X}, [I]"


class Instruction(NamedTuple):
    """a decoded opcode: the operation plus every operand field it could use"""
    op: Op
    x: int
    y: int
    n: int
    kk: int
    nnn: int

    def mnemonic(self):
        return self.op.value.format(**self._asdict())


# opcodes whose operation depends only on the high nibble
_BY_HIGH_NIBBLE = {
    0x1: Op.JP,
    0x2: Op.CALL,
    0x3: Op.SE,
    0x4: Op.SNE,
    0x5: Op.SE_REG,     # low nibble is ignored
    0x6: Op.LD,
    0x7: Op.ADD,
    0x9: Op.SNE_REG,    # low nibble is ignored
    0xA: Op.LD_I,
    0xB: Op.JP_V0,
    0xC: Op.RND,
    0xD: Op.DRW,
}

_ALU = {
    0x0: Op.LD_REG,
    0x1: Op.OR,
    0x2: Op.AND,
    0x3: Op.XOR,
    0x4: Op.ADD_REG,
    0x5: Op.SUB,
    0x6: Op.SHR,
    0x7: Op.SUBN,
    0xE: Op.SHL,
}

_BY_LOW_BYTE = {
    (0xE, 0x9E): Op.SKP,
    (0xE, 0xA1): Op.SKNP,
    (0xF, 0x07): Op.LD_VX_DT,
    (0xF, 0x0A): Op.LD_VX_K,
    (0xF, 0x15): Op.LD_DT,
    (0xF, 0x18): Op.LD_ST,
    (0xF, 0x1E): Op.ADD_I,
    (0xF, 0x29): Op.LD_F,
    (0xF, 0x33): Op.LD_B,
    (0xF, 0x55): Op.LD_MEM,
    (0xF, 0x65): Op.LD_REGS,
}


def decode(hi, lo):
    """split the two opcode bytes into nibbles and return the matching Instruction"""
    nibbles = (hi >> 4, hi & 0xF, lo >> 4, lo & 0xF)
    family, x, y, n = nibbles
    nnn = (x << 8) | lo

    if family == 0x0:
        if x == 0x0 and lo == 0xE0:
            op = Op.CLS
        elif x == 0x0 and lo == 0xEE:
            op = Op.RET
        else:
            op = Op.SYS     # machine routine call, never emulated
    elif family == 0x8:
        op = _ALU.get(n)
    elif family in (0xE, 0xF):
        op = _BY_LOW_BYTE.get((family, lo))
    else:
        op = _BY_HIGH_NIBBLE[family]

    if op is None:
        raise UnimplementedOpcode(nibbles)
    return Instruction(op, x, y, n, lo, nnn)


# ******************** MEMORY SECTION
# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A FIXED SIZE OF 4KB
class Memory:
    def __init__(self, size=MEMORY_SIZE):
        self.inner = bytearray(size)
        self.reset()

    def reset(self):
        """zero every cell and burn the font glyphs in at FONT_BASE"""
        self.inner[:] = bytes(len(self))
        self.inner[FONT_BASE:FONT_BASE+len(C8_FONTS)] = bytes(C8_FONTS)

    def __len__(self):
        return len(self.inner)

    def __setitem__(self, key, value):
        if isinstance(key, slice):
            start, stop, _ = key.indices(len(self))
            if stop - start != len(value):
                raise IndexError(f"memory write {key} outside of the {len(self)} bytes address space")
        elif not 0 <= key < len(self):
            raise IndexError(f"memory address 0x{key:04x} out of range")
        self.inner[key] = value

    def __getitem__(self, key):
        if isinstance(key, slice):
            if key.stop is not None and key.stop > len(self):
                raise IndexError(f"memory read {key} outside of the {len(self)} bytes address space")
        elif not 0 <= key < len(self):
            raise IndexError(f"memory address 0x{key:04x} out of range")
        return self.inner[key]

    @property
    def capacity(self):
        """number of bytes available to programs"""
        return len(self) - PROGRAM_START

    def load_rom(self, rom):
        """copy the ROM verbatim at PROGRAM_START, refusing anything that doesn't fit"""
        if len(rom) > self.capacity:
            raise CapacityError(len(rom), self.capacity)
        self.inner[PROGRAM_START:PROGRAM_START+len(rom)] = rom


# ********** WRAPS A LIST TO REPRESENT THE CALL STACK
# the original hardware held at most 16 return addresses, here the depth is unbounded
class Stack:
    def __init__(self):
        self.addr_list = []

    def __str__(self):
        return "[" + ", ".join(f"0x{a:04x}" for a in self.addr_list) + "]"

    def append(self, address):
        self.addr_list.append(address)

    def pop(self):
        if not self.addr_list:
            raise StackUnderflow()
        return self.addr_list.pop()

    def clear(self):
        self.addr_list.clear()


# ******************** I/O STATE SECTION
class Display:
    """row-major grid of pixels, True when the pixel is ON"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.rows = [[False] * w for _ in range(h)]
        self.dirty = True

    def clear(self):
        for row in self.rows:
            row[:] = [False] * self.w
        self.dirty = True

    def blit(self, x, y, sprite):
        """
        XOR an 8 pixels wide sprite onto the grid with its top left corner at (x, y)
        the origin wraps around the screen, the rest of the sprite is clipped at the edges
        return True if any pixel has been turned OFF by this call
        """
        x, y = x % self.w, y % self.h
        collision = False
        for i, sprite_byte in enumerate(sprite):
            row_y = y + i
            if row_y >= self.h:
                break
            row = self.rows[row_y]
            for j in range(8):
                col_x = x + j
                if col_x >= self.w:
                    break
                if (sprite_byte >> (7 - j)) & 0x1:
                    if row[col_x]:
                        collision = True
                    row[col_x] = not row[col_x]
        self.dirty = True
        return collision

    def snapshot(self):
        return tuple(tuple(row) for row in self.rows)


class Keypad:
    """16 hexadecimal keys, each either pressed or released"""
    def __init__(self):
        self.keys = [False] * NUM_KEYS

    def __getitem__(self, key):
        return self.keys[key]

    def __setitem__(self, key, value):
        # keys outside of the hex keypad are ignored
        if 0 <= key < NUM_KEYS:
            self.keys[key] = bool(value)

    def untouched(self):
        return not any(self.keys)

    def first(self):
        """lowest numbered key currently held down"""
        return self.keys.index(True)

    def release_all(self):
        self.keys = [False] * NUM_KEYS


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=None):
        self.rng = rng if rng is not None else random.Random()
        self.mem = Memory()
        self.stack = Stack()
        self.display = Display()
        self.keypad = Keypad()
        self.v_regs = [0] * NUM_REGISTERS
        self.pc = PROGRAM_START
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.instructions = {
            Op.CLS: self._clear_screen,
            Op.RET: self._return,
            Op.SYS: self._sys,
            Op.JP: self._jump,
            Op.CALL: self._call_addr,
            Op.SE: self._skip_if_eq,
            Op.SNE: self._skip_if_not_eq,
            Op.SE_REG: self._skip_if_eq_regs,
            Op.LD: self._set_vx,
            Op.ADD: self._add_to_vx,
            Op.LD_REG: self._set_vx_to_vy,
            Op.OR: self._set_vx_or_vy,
            Op.AND: self._set_vx_and_vy,
            Op.XOR: self._set_vx_xor_vy,
            Op.ADD_REG: self._add_vx_vy,
            Op.SUB: self._sub_vx_vy,
            Op.SHR: self._shr,
            Op.SUBN: self._subn_vx_vy,
            Op.SHL: self._shl,
            Op.SNE_REG: self._skip_if_not_eq_regs,
            Op.LD_I: self._set_idx,
            Op.JP_V0: self._jump_plus,
            Op.RND: self._random_byte_and,
            Op.DRW: self._to_screen,
            Op.SKP: self._skip_if_pressed,
            Op.SKNP: self._skip_if_not_pressed,
            Op.LD_VX_DT: self._set_vx_dt,
            Op.LD_VX_K: self._wait_keypress,
            Op.LD_DT: self._set_dt_vx,
            Op.LD_ST: self._set_st,
            Op.ADD_I: self._add_to_idx,
            Op.LD_F: self._select_char,
            Op.LD_B: self._bcd_repr,
            Op.LD_MEM: self._store_vregs,
            Op.LD_REGS: self._load_vregs,
        }

    def __str__(self):
        registers = " ".join(f"V{i:X}:0x{v:02x}" for i, v in enumerate(self.v_regs))
        return (f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{registers}\n"
                f"STACK:{self.stack}\n"
                f"TIMERS: DT={self.dt} ST={self.st}\n"
                f"DRAW: {self.display.dirty}")

    # ********** HOST INTERFACE
    def reset(self):
        """bring every piece of state back to power-on values, font included"""
        self.mem.reset()
        self.stack.clear()
        self.display.clear()
        self.keypad.release_all()
        self.v_regs = [0] * NUM_REGISTERS
        self.pc = PROGRAM_START
        self.idx = 0
        self.dt = 0
        self.st = 0

    def load(self, rom):
        self.mem.load_rom(rom)

    def step(self):
        """execute exactly one instruction and return it"""
        # fetch (each instruction is two bytes long)
        hi, lo = self.mem[self.pc], self.mem[self.pc + 1]
        self._goto_next_instruction()
        # decode + execute
        instruction = decode(hi, lo)
        self.instructions[instruction.op](instruction)
        return instruction

    def tick_timers(self):
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    def get_display(self):
        return self.display.snapshot()

    def needs_redraw(self):
        return self.display.dirty

    def was_redrawn(self):
        self.display.dirty = False

    def press_key(self, key):
        self.keypad[key] = True

    def unpress_key(self, key):
        self.keypad[key] = False

    def is_pressed(self, key):
        return 0 <= key < NUM_KEYS and self.keypad[key]

    @property
    def registers(self):
        return tuple(self.v_regs)

    @property
    def index(self):
        return self.idx

    @property
    def delay_timer(self):
        return self.dt

    @property
    def sound_timer(self):
        return self.st

    @property
    def call_stack(self):
        return tuple(self.stack.addr_list)

    # ********** INSTRUCTIONS
    def _goto_next_instruction(self):
        self.pc += INSTRUCTION_SIZE

    def _clear_screen(self, ins):
        self.display.clear()

    def _return(self, ins):
        """return from a subroutine"""
        self.pc = self.stack.pop()

    def _sys(self, ins):
        """jump to a machine code routine, ignored by modern interpreters"""

    def _jump(self, ins):
        self.pc = ins.nnn

    def _call_addr(self, ins):
        self.stack.append(self.pc)      # pc already points to the instruction after the call
        self.pc = ins.nnn

    def _skip_if_eq(self, ins):
        if self.v_regs[ins.x] == ins.kk:
            self._goto_next_instruction()

    def _skip_if_not_eq(self, ins):
        if self.v_regs[ins.x] != ins.kk:
            self._goto_next_instruction()

    def _skip_if_eq_regs(self, ins):
        if self.v_regs[ins.x] == self.v_regs[ins.y]:
            self._goto_next_instruction()

    def _skip_if_not_eq_regs(self, ins):
        if self.v_regs[ins.x] != self.v_regs[ins.y]:
            self._goto_next_instruction()

    def _set_vx(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.kk

    def _add_to_vx(self, ins):
        """add to the value already present in Vx, VF is left alone"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.kk) & 0xFF

    def _set_vx_to_vy(self, ins):
        self.v_regs[ins.x] = self.v_regs[ins.y]

    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]

    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]

    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]

    def _add_vx_vy(self, ins):
        """set Vx = Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        self.v_regs[ins.x] = total & 0xFF     # keep only the lowest 8 bits from the result
        self.v_regs[FLAG_REGISTER] = 1 if total > 0xFF else 0

    def _sub_vx_vy(self, ins):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self.v_regs[FLAG_REGISTER] = 1 if vx >= vy else 0

    def _subn_vx_vy(self, ins):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self.v_regs[FLAG_REGISTER] = 1 if vy >= vx else 0

    def _shr(self, ins):
        """set Vx = Vx SHR 1, VF = the bit shifted out"""
        LSB = self.v_regs[ins.x] & 0x1
        self.v_regs[ins.x] >>= 1
        self.v_regs[FLAG_REGISTER] = LSB

    def _shl(self, ins):
        """set Vx = Vx SHL 1, VF = the bit shifted out"""
        MSB = (self.v_regs[ins.x] & 0x80) >> 7
        self.v_regs[ins.x] = (self.v_regs[ins.x] << 1) & 0xFF
        self.v_regs[FLAG_REGISTER] = MSB

    def _set_idx(self, ins):
        self.idx = ins.nnn

    def _jump_plus(self, ins):
        self.pc = ins.nnn + self.v_regs[0x0]

    def _random_byte_and(self, ins):
        self.v_regs[ins.x] = self.rng.randint(0, 255) & ins.kk

    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        sprite = self.mem[self.idx:self.idx+ins.n]
        collision = self.display.blit(self.v_regs[ins.x], self.v_regs[ins.y], sprite)
        self.v_regs[FLAG_REGISTER] = 1 if collision else 0

    def _skip_if_pressed(self, ins):
        if self.keypad[self.v_regs[ins.x] & 0xF]:
            self._goto_next_instruction()

    def _skip_if_not_pressed(self, ins):
        if not self.keypad[self.v_regs[ins.x] & 0xF]:
            self._goto_next_instruction()

    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.dt

    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx"""
        if self.keypad.untouched():
            self.pc -= INSTRUCTION_SIZE     # stay on the same instruction until a key is pressed
        else:
            self.v_regs[ins.x] = self.keypad.first()

    def _set_dt_vx(self, ins):
        self.dt = self.v_regs[ins.x]

    def _set_st(self, ins):
        self.st = self.v_regs[ins.x]

    def _add_to_idx(self, ins):
        self.idx = (self.idx + self.v_regs[ins.x]) & 0xFFFF

    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_BASE + (self.v_regs[ins.x] & 0xF) * GLYPH_SIZE

    def _bcd_repr(self, ins):
        """hundreds digit of Vx at I, tens at I+1, ones at I+2"""
        value = self.v_regs[ins.x]
        self.mem[self.idx:self.idx+3] = bytes((value // 100, (value // 10) % 10, value % 10))

    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        self.mem[self.idx:self.idx+ins.x+1] = bytes(self.v_regs[:ins.x+1])

    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        self.v_regs[:ins.x+1] = list(self.mem[self.idx:self.idx+ins.x+1])
