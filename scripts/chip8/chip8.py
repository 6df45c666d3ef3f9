# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# THREADS
# interpreter (INSTRUCTIONS_PER_SECOND) | timers (TIMERS_FREQ) | renderer + input (FRAMES_PER_SECOND)
# the three loops never call each other, they only share Display, Keypad and the two Timers


import argparse
import logging
import random
import sys
import threading
import time
from collections import namedtuple
from functools import wraps
from types import MappingProxyType

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
    K_ESCAPE,
)


log = logging.getLogger(__name__)


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

FONT_START_ADDRESS = 0x050
FONT_CHAR_SIZE = 5
ROM_START_ADDRESS = 0x200
RAM_SIZE = 4096
STACK_SIZE = 16
VREG_COUNT = 16
VF = 0xF
KEY_COUNT = 16

INSTRUCTIONS_PER_SECOND = 700
TIMERS_FREQ = 60
FRAMES_PER_SECOND = 60

def env_flag(name):
    """True unless the variable is unset, empty or 0"""
    return os.getenv(name, '0') not in ('', '0')

DEBUG = env_flag('DEBUG')
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
SCALE = 15

# pixel intensities, a pixel that just got turned off fades out from PIXEL_PRE_OFF down to PIXEL_OFF
PIXEL_ON = 0xFF
PIXEL_PRE_OFF = 0xFE
PIXEL_OFF = 0x00
FADE_STEP = 0x10
BLACK = pygame.Color(0, 0, 0, 255)

# behavioral toggles for ROMs written against older interpreters, every one defaults to the modern behavior
#   shift_vy        8XY6/8XYE copy VY into VX before shifting
#   jump_vx         BXNN jumps to XNN + VX instead of NNN + V0
#   increment_i     FX55/FX65 leave I pointing past the last register copied
#   logic_reset_vf  8XY1/8XY2/8XY3 reset VF to 0
Quirks = namedtuple(
    "Quirks",
    ["shift_vy", "jump_vx", "increment_i", "logic_reset_vf"],
    defaults=[False, False, False, False],
)


def default_keymap():
    """
    physical keyboard layout       CHIP-8 keypad
        1 2 3 4                       1 2 3 C
        Q W E R                       4 5 6 D
        A S D F                       7 8 9 E
        Z X C V                       A 0 B F
    """
    return MappingProxyType({
        K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
        K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
        K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
        K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
    })


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error that stops the emulation"""


class MemoryAccessError(Chip8Error, IndexError):
    pass


class RegisterIndexError(Chip8Error, IndexError):
    pass


class StackOverflowError(Chip8Error, IndexError):
    pass


class StackUnderflowError(Chip8Error, IndexError):
    pass


class RomLoadError(Chip8Error):
    pass


# ******************** UTILITIES SECTION
# bit-field decoder, every 16-bit word decodes, deciding what it means is up to the CPU
def get_op(opcode):
    return (opcode & 0xF000) >> 12

def get_x(opcode):
    return (opcode & 0x0F00) >> 8

def get_y(opcode):
    return (opcode & 0x00F0) >> 4

def get_n(opcode):
    return opcode & 0x000F

def get_nn(opcode):
    return opcode & 0x00FF

def get_nnn(opcode):
    return opcode & 0x0FFF


def asm(msg):
    """decorator to log the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(self, opcode):
            mem_addr = self.pc - 2          # the fetch already moved pc onto the following instruction
            vals = fn(self, opcode)         # use the locals() values of each decorated function in the message
            if log.isEnabledFor(logging.DEBUG):
                vals['mem_addr'] = mem_addr
                log.debug(("mem_addr: 0x{mem_addr:04x}    instruction: " + msg).format(**vals))
        return wrapper_fn
    return decorator

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("rom", help="input rom file")
    parser.add_argument("--ips", type=int, default=INSTRUCTIONS_PER_SECOND, help="instructions executed per second")
    parser.add_argument("--scale", type=int, default=SCALE, help="size in window pixels of a CHIP-8 pixel")
    parser.add_argument("--no-fade", action="store_true", help="turn pixels off at once instead of fading them out")
    parser.add_argument("--shift-vy", action="store_true", help="8XY6/8XYE shift VY into VX (COSMAC VIP)")
    parser.add_argument("--jump-vx", action="store_true", help="BXNN jumps to XNN + VX (SUPER-CHIP)")
    parser.add_argument("--increment-i", action="store_true", help="FX55/FX65 increment I (COSMAC VIP)")
    parser.add_argument("--logic-reset-vf", action="store_true", help="8XY1/8XY2/8XY3 reset VF (COSMAC VIP)")
    parser.add_argument("--debug", action="store_true", default=DEBUG, help="log every executed instruction")
    return parser.parse_args(argv)


# ******************** I/O SECTION
# ********** PIXEL BUFFER SHARED BETWEEN THE INTERPRETER (WRITER) AND THE RENDERER (READER)
class Display:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = bytearray(w * h)
        self.lock = threading.Lock()

    def _inside(self, x, y):
        return 0 <= x < self.w and 0 <= y < self.h

    def __getitem__(self, pos):
        x, y = pos
        if not self._inside(x, y):
            raise IndexError(f"pixel ({x}, {y}) outside of the {self.w}x{self.h} screen")
        with self.lock:
            return self.buffer[y * self.w + x]

    def snapshot(self):
        """copy of the whole buffer, taken under the lock so the renderer never sees half a write"""
        with self.lock:
            return bytes(self.buffer)

    def flip_pixel(self, x, y):
        """
        turn an OFF (or fading) pixel ON, or an ON pixel to PIXEL_PRE_OFF
        return True if the pixel got turned off, pixels outside the screen are dropped and never wrap around
        """
        if not self._inside(x, y):
            return False
        i = y * self.w + x
        with self.lock:
            was_on = self.buffer[i] == PIXEL_ON
            self.buffer[i] = PIXEL_PRE_OFF if was_on else PIXEL_ON
        return was_on

    def clear(self):
        """every ON pixel starts fading out instead of going black"""
        with self.lock:
            for i, p in enumerate(self.buffer):
                if p == PIXEL_ON:
                    self.buffer[i] = PIXEL_PRE_OFF

    def fade(self, step=FADE_STEP):
        """one frame of fade out, meant to be called by the renderer once per rendered frame"""
        with self.lock:
            for i, p in enumerate(self.buffer):
                if PIXEL_OFF < p < PIXEL_ON:
                    self.buffer[i] = max(PIXEL_OFF, p - step)

# ********** PRESSED AND JUST-RELEASED FLAGS FOR EACH KEY, WRITTEN BY THE INPUT POLLER
class Keypad:
    def __init__(self):
        self.pressed = [False] * KEY_COUNT
        self.released = [False] * KEY_COUNT
        self.lock = threading.Lock()

    def __getitem__(self, key):
        """return True if the key is currently down, values that name no key are never down"""
        return 0 <= key < KEY_COUNT and self.pressed[key]

    def press(self, key):
        with self.lock:
            self.pressed[key] = True

    def release(self, key):
        with self.lock:
            self.pressed[key] = False
            self.released[key] = True

    def new_frame(self):
        """forget releases older than the current frame, called by the input poller before each poll"""
        with self.lock:
            self.released = [False] * KEY_COUNT

    def take_released(self):
        """consume the lowest just-released key, None if no key has been released"""
        with self.lock:
            for key, flag in enumerate(self.released):
                if flag:
                    self.released[key] = False
                    return key
        return None

    def __str__(self):
        down = [f"{k:X}" for k, flag in enumerate(self.pressed) if flag]
        return f"DOWN:{down}"

class Screen:
    def __init__(self, display, s=SCALE, bg_color=BLACK):
        self.display = display
        self.scale = s
        self.background = bg_color
        self.surface = pygame.display.set_mode(
            (display.w * self.scale, display.h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self):
        """draw each buffer byte as a greyscale square"""
        self.surface.fill(self.background)
        for i, v in enumerate(self.display.snapshot()):
            if v == PIXEL_OFF:
                continue
            y, x = divmod(i, self.display.w)
            pygame.draw.rect(
                self.surface,
                (v, v, v),
                (x * self.scale, y * self.scale, self.scale, self.scale)
            )
        pygame.display.flip()

def poll_input(keypad, keymap):
    """loop through the event queue and update the keypad, return False when the user asks to quit"""
    keypad.new_frame()
    for event in pygame.event.get():
        if event.type == pygame.QUIT:
            return False
        if event.type == pygame.KEYDOWN:
            if event.key == K_ESCAPE:
                return False
            if event.key in keymap:
                keypad.press(keymap[event.key])
        elif event.type == pygame.KEYUP and event.key in keymap:
            keypad.release(keymap[event.key])
    return True


# ******************** MEMORY SECTION
# ********** A FIXED ARRAY OF 16 RETURN ADDRESSES, sp == -1 MEANS EMPTY
class Stack:
    def __init__(self, size=STACK_SIZE):
        self.addr_list = [0] * size
        self.sp = -1

    def __len__(self):
        return self.sp + 1

    def push(self, address):
        if self.sp + 1 >= len(self.addr_list):
            raise StackOverflowError(f"The CHIP-8 stack can contain at most {len(self.addr_list)} addresses. Limit exceeded")
        self.sp += 1
        self.addr_list[self.sp] = address

    def pop(self):
        if self.sp < 0:
            raise StackUnderflowError("Return with an empty CHIP-8 stack")
        address = self.addr_list[self.sp]
        self.sp -= 1
        return address

    def __str__(self):
        return str([f"0x{a:04x}" for a in self.addr_list[:self.sp + 1]])

# ********** 4KB OF BYTES, EVERY ACCESS OUTSIDE OF THEM IS FATAL
class Memory:
    def __init__(self, size=RAM_SIZE):
        self.inner = bytearray(size)

    def _check(self, address):
        if not 0 <= address < len(self.inner):
            raise MemoryAccessError(f"RAM address 0x{address:04x} out of range")

    def __getitem__(self, address):
        self._check(address)
        return self.inner[address]

    def __setitem__(self, address, value):
        self._check(address)
        self.inner[address] = value

    def load(self, data, offset):
        """copy data into memory starting at offset"""
        if offset < 0 or offset + len(data) > len(self.inner):
            raise MemoryAccessError(f"{len(data)} bytes do not fit in RAM at 0x{offset:04x}")
        self.inner[offset:offset + len(data)] = bytes(data)

# ********** V0..VF, VF DOUBLES AS THE FLAG OUTPUT OF ARITHMETIC, SHIFT AND DRAW INSTRUCTIONS
class Registers:
    def __init__(self, count=VREG_COUNT):
        self.inner = bytearray(count)

    def _check(self, index):
        if not 0 <= index < len(self.inner):
            raise RegisterIndexError(f"V register index {index} out of range")

    def __getitem__(self, index):
        self._check(index)
        return self.inner[index]

    def __setitem__(self, index, value):
        self._check(index)
        self.inner[index] = value

    def __str__(self):
        return str(list(self.inner))


# ******************** TIMERS SECTION
class Timer:
    """8-bit countdown register, set by the interpreter and decremented by the timers thread"""

    def __init__(self, value=0):
        self._value = value
        self._lock = threading.Lock()

    @property
    def value(self):
        with self._lock:
            return self._value

    def set(self, value):
        with self._lock:
            self._value = value & 0xFF

    def decrement(self):
        with self._lock:
            if self._value > 0:
                self._value -= 1
            return self._value

    def __str__(self):
        return str(self.value)

def decrement_timers_routine(timers, freq=TIMERS_FREQ, stop=None):
    """decrement every timer towards zero freq times per second, until stop is set"""
    time_per_cycle = 1 / freq
    while stop is None or not stop.is_set():
        clock = time.perf_counter()
        for timer in timers:
            timer.decrement()
        # wait to meet timing
        elapsed = time.perf_counter() - clock
        if elapsed < time_per_cycle:
            time.sleep(time_per_cycle - elapsed)
        else:
            log.warning("Decrementing timers took longer than expected: %.3f ms", elapsed * 1000)


# ******************** CPU SECTION
class Chip8:
    def __init__(self, display=None, keypad=None, delay_timer=None, sound_timer=None,
                 quirks=Quirks(), ips=INSTRUCTIONS_PER_SECOND):
        self.mem = Memory()
        self.mem.load(C8_FONTS, FONT_START_ADDRESS)
        self.stack = Stack()
        self.v_regs = Registers()
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = delay_timer if delay_timer is not None else Timer()   # delay timer, active when non-zero
        self.st = sound_timer if sound_timer is not None else Timer()   # sound timer, beeps when non-zero
        self.display = display if display is not None else Display()
        self.keypad = keypad if keypad is not None else Keypad()
        self.quirks = quirks
        self.ips = ips
        self.instructions = {
            0x00E0: self._clear_screen,
            0x00EE: self._return,
            0x1000: self._jump,
            0x2000: self._call_addr,
            0x3000: self._skip_if_eq,
            0x4000: self._skip_if_not_eq,
            0x5000: self._skip_if_eq_regs,
            0x6000: self._set_vk,
            0x7000: self._add_to_vk,
            0x8000: self._set_vx_to_vy,
            0x8001: self._set_vx_or_vy,
            0x8002: self._set_vx_and_vy,
            0x8003: self._set_vx_xor_vy,
            0x8004: self._add_vx_vy,
            0x8005: self._sub_vx_vy,
            0x8006: self._shr,
            0x8007: self._subn_vx_vy,
            0x800E: self._shl,
            0x9000: self._skip_if_not_eq_regs,
            0xA000: self._set_idx,
            0xB000: self._jump_plus,
            0xC000: self._random_byte_and,
            0xD000: self._to_screen,
            0xE09E: self._skip_if_pressed,
            0xE0A1: self._skip_if_not_pressed,
            0xF007: self._set_vx_dt,
            0xF00A: self._wait_keyrelease,
            0xF015: self._set_dt_vx,
            0xF018: self._set_st,
            0xF01E: self._add_to_idx,
            0xF029: self._select_char,
            0xF033: self._bcd_repr,
            0xF055: self._store_vregs,
            0xF065: self._load_vregs,
        }

    @classmethod
    def from_file(cls, path, **kwargs):
        """build a machine with the ROM at path loaded, raise RomLoadError if it can't be read"""
        try:
            with open(path, mode='rb') as f:
                rom = f.read()
        except OSError as err:
            raise RomLoadError(f"cannot read ROM at path {path}: {err}") from err
        chip = cls(**kwargs)
        chip.load_rom(rom)
        log.info("The ROM at path %s has been loaded successfully (%d bytes)", path, len(rom))
        return chip

    def load_rom(self, rom):
        if len(rom) > RAM_SIZE - ROM_START_ADDRESS:
            raise RomLoadError(f"ROM of {len(rom)} bytes does not fit in {RAM_SIZE - ROM_START_ADDRESS} bytes of RAM")
        self.mem.load(rom, ROM_START_ADDRESS)

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        timers = f"DT:{self.dt} | ST:{self.st}"
        return f"{registers}\n{stack}\n{timers}\nKEYPAD:{self.keypad}"

    @asm("CLS")
    def _clear_screen(self, opcode):
        self.display.clear()
        return locals()

    @asm("RET")
    def _return(self, opcode):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("JP 0x{address:04x}")
    def _jump(self, opcode):
        address = get_nnn(opcode)
        self.pc = address
        return locals()

    @asm("CALL 0x{address:04x}")
    def _call_addr(self, opcode):
        address = get_nnn(opcode)
        self.stack.push(self.pc)
        self.pc = address
        return locals()

    @asm("SE V{x}, {comparison_value}")
    def _skip_if_eq(self, opcode):
        x, comparison_value = get_x(opcode), get_nn(opcode)
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("SNE V{x}, {comparison_value}")
    def _skip_if_not_eq(self, opcode):
        x, comparison_value = get_x(opcode), get_nn(opcode)
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("SE V{x}, V{y}")
    def _skip_if_eq_regs(self, opcode):
        x, y = get_x(opcode), get_y(opcode)
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("SNE V{x}, V{y}")
    def _skip_if_not_eq_regs(self, opcode):
        x, y = get_x(opcode), get_y(opcode)
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("LD V{x}, {value}")
    def _set_vk(self, opcode):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = get_x(opcode), get_nn(opcode)
        self.v_regs[x] = value
        return locals()

    @asm("ADD V{x}, {value}")
    def _add_to_vk(self, opcode):
        """add to the value already present in one of the variable registers, VF is left alone"""
        x, value = get_x(opcode), get_nn(opcode)
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF
        return locals()

    @asm("LD V{x}, V{y}")
    def _set_vx_to_vy(self, opcode):
        x, y = get_x(opcode), get_y(opcode)
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("OR V{x}, V{y}")
    def _set_vx_or_vy(self, opcode):
        x, y = get_x(opcode), get_y(opcode)
        self.v_regs[x] = self.v_regs[x] | self.v_regs[y]
        if self.quirks.logic_reset_vf:
            self.v_regs[VF] = 0
        return locals()

    @asm("AND V{x}, V{y}")
    def _set_vx_and_vy(self, opcode):
        x, y = get_x(opcode), get_y(opcode)
        self.v_regs[x] = self.v_regs[x] & self.v_regs[y]
        if self.quirks.logic_reset_vf:
            self.v_regs[VF] = 0
        return locals()

    @asm("XOR V{x}, V{y}")
    def _set_vx_xor_vy(self, opcode):
        x, y = get_x(opcode), get_y(opcode)
        self.v_regs[x] = self.v_regs[x] ^ self.v_regs[y]
        if self.quirks.logic_reset_vf:
            self.v_regs[VF] = 0
        return locals()

    # from here on VF gets written last, so when x or y is F the flag wins over the result

    @asm("ADD V{x}, V{y}")
    def _add_vx_vy(self, opcode):
        """set Vx = Vx + Vy, VF = carry"""
        x, y = get_x(opcode), get_y(opcode)
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF
        self.v_regs[VF] = 1 if total > 0xFF else 0
        return locals()

    @asm("SUB V{x}, V{y}")
    def _sub_vx_vy(self, opcode):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        x, y = get_x(opcode), get_y(opcode)
        vx, vy = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (vx - vy) & 0xFF
        self.v_regs[VF] = 1 if vx >= vy else 0
        return locals()

    @asm("SUBN V{x}, V{y}")
    def _subn_vx_vy(self, opcode):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        x, y = get_x(opcode), get_y(opcode)
        vx, vy = self.v_regs[x], self.v_regs[y]
        self.v_regs[x] = (vy - vx) & 0xFF
        self.v_regs[VF] = 1 if vy >= vx else 0
        return locals()

    @asm("SHR V{x} {{, V{y}}}")
    def _shr(self, opcode):
        """set Vx = Vx SHR 1, VF = the bit shifted out"""
        x, y = get_x(opcode), get_y(opcode)
        if self.quirks.shift_vy:
            self.v_regs[x] = self.v_regs[y]
        lsb = self.v_regs[x] & 0x1
        self.v_regs[x] = self.v_regs[x] >> 1
        self.v_regs[VF] = lsb
        return locals()

    @asm("SHL V{x} {{, V{y}}}")
    def _shl(self, opcode):
        """set Vx = Vx SHL 1, VF = the bit shifted out"""
        x, y = get_x(opcode), get_y(opcode)
        if self.quirks.shift_vy:
            self.v_regs[x] = self.v_regs[y]
        msb = (self.v_regs[x] & 0x80) >> 7
        self.v_regs[x] = (self.v_regs[x] << 1) & 0xFF
        self.v_regs[VF] = msb
        return locals()

    @asm("LD I, 0x{value:04x}")
    def _set_idx(self, opcode):
        """set the value of the I register"""
        value = get_nnn(opcode)
        self.idx = value
        return locals()

    @asm("JP V{register}, 0x{address:04x}")
    def _jump_plus(self, opcode):
        address = get_nnn(opcode)
        register = get_x(opcode) if self.quirks.jump_vx else 0x0
        self.pc = (address + self.v_regs[register]) & 0xFFFF
        return locals()

    @asm("RND V{x}, 0x{kk:02x}")
    def _random_byte_and(self, opcode):
        x, kk = get_x(opcode), get_nn(opcode)
        rnd = random.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("DRW V{x}, V{y}, {n_bytes}")
    def _to_screen(self, opcode):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y, n_bytes = get_x(opcode), get_y(opcode), get_n(opcode)
        # only the starting point wraps around, the sprite itself gets clipped at the edges
        x_start = self.v_regs[x] % self.display.w
        y_start = self.v_regs[y] % self.display.h
        self.v_regs[VF] = 0
        for i in range(n_bytes):
            sprite_byte = self.mem[self.idx + i]
            for j in range(8):
                if sprite_byte & (0x80 >> j):
                    # collision: an ON pixel got erased by the sprite
                    if self.display.flip_pixel(x_start + j, y_start + i):
                        self.v_regs[VF] = 1
        return locals()

    @asm("SKP V{x}")
    def _skip_if_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        x = get_x(opcode)
        if self.keypad[self.v_regs[x]]:
            self._goto_next_instruction()
        return locals()

    @asm("SKNP V{x}")
    def _skip_if_not_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        x = get_x(opcode)
        if not self.keypad[self.v_regs[x]]:
            self._goto_next_instruction()
        return locals()

    @asm("LD V{x}, DT")
    def _set_vx_dt(self, opcode):
        """set Vx = DT (delay timer) value"""
        x = get_x(opcode)
        self.v_regs[x] = self.dt.value
        return locals()

    @asm("LD V{x}, K")
    def _wait_keyrelease(self, opcode):
        """wait for a key to be released and store its value in Vx"""
        x = get_x(opcode)
        key = self.keypad.take_released()
        if key is None:
            self.pc -= 0x2      # stay on the same instruction until a key is released
        else:
            self.v_regs[x] = key
        return locals()

    @asm("LD DT, V{x}")
    def _set_dt_vx(self, opcode):
        """set DT (delay timer) = Vx"""
        x = get_x(opcode)
        self.dt.set(self.v_regs[x])
        return locals()

    @asm("LD ST, V{register}")
    def _set_st(self, opcode):
        """set ST = Vx"""
        register = get_x(opcode)
        self.st.set(self.v_regs[register])
        return locals()

    @asm("ADD I, V{register}")
    def _add_to_idx(self, opcode):
        """set I = I + Vx, VF = 1 when I leaves the 12-bit address space"""
        register = get_x(opcode)
        self.idx = (self.idx + self.v_regs[register]) & 0xFFFF
        if self.idx > 0x0FFF:
            self.v_regs[VF] = 1
        return locals()

    @asm("LD F, V{register}")
    def _select_char(self, opcode):
        """set I to location of sprite for digit Vx"""
        register = get_x(opcode)
        self.idx = FONT_START_ADDRESS + (self.v_regs[register] & 0xF) * FONT_CHAR_SIZE
        return locals()

    @asm("LD B, V{x}")
    def _bcd_repr(self, opcode):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        x = get_x(opcode)
        value = self.v_regs[x]
        for offset in (2, 1, 0):
            self.mem[self.idx + offset] = value % 10
            value //= 10
        return locals()

    @asm("LD [I], V{x}")
    def _store_vregs(self, opcode):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = get_x(opcode)
        for i in range(x + 1):
            self.mem[self.idx + i] = self.v_regs[i]
        if self.quirks.increment_i:
            self.idx = (self.idx + x + 1) & 0xFFFF
        return locals()

    @asm("LD V{x}, [I]")
    def _load_vregs(self, opcode):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = get_x(opcode)
        for i in range(x + 1):
            self.v_regs[i] = self.mem[self.idx + i]
        if self.quirks.increment_i:
            self.idx = (self.idx + x + 1) & 0xFFFF
        return locals()

    def _unknown(self, opcode):
        log.warning("Unknown instruction 0x%04x at 0x%04x, skipped", opcode, self.pc - 2)

    def _goto_next_instruction(self):
        self.pc += 0x2

    def decode(self, opcode):
        """decode opcodes using masks and return respective function"""
        # WATCH OUT: masks order is important!!!
        # as the for loop breaks out as soon as it finds a match
        masks = {
            0xFFFF: [0x00E0, 0x00EE],
            0xF0FF: [0xE09E, 0xE0A1, 0xF007, 0xF00A, 0xF015, 0xF018, 0xF01E, 0xF029, 0xF033, 0xF055, 0xF065],
            0xF00F: [0x5000, 0x8000, 0x8001, 0x8002, 0x8003, 0x8004, 0x8005, 0x8006, 0x8007, 0x800E, 0x9000],
            0xF000: [0x1000, 0x2000, 0x3000, 0x4000, 0x6000, 0x7000, 0xA000, 0xB000, 0xC000, 0xD000],
        }
        for m, ops in masks.items():
            if (opcode & m) in ops:
                return self.instructions[opcode & m]
        return self._unknown

    def execute(self, opcode):
        self.decode(opcode)(opcode)

    def cycle(self):
        """fetch (each instruction is two bytes long, big endian), decode and execute one instruction"""
        opcode = self.mem[self.pc] << 8 | self.mem[self.pc + 1]
        self._goto_next_instruction()
        self.execute(opcode)
        return opcode

    def run(self, max_cycles=None, stop=None):
        """
        execute instructions at self.ips per second, forever unless max_cycles or stop say otherwise
        an instruction running over its time slot is logged, the following ones are not sped up to catch up
        """
        time_per_instruction = 1 / self.ips
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            if stop is not None and stop.is_set():
                break
            clock = time.perf_counter()
            opcode = self.cycle()
            cycles += 1
            # wait to meet timing
            elapsed = time.perf_counter() - clock
            if elapsed < time_per_instruction:
                time.sleep(time_per_instruction - elapsed)
            else:
                log.warning("Instruction took longer than expected: 0x%04x", opcode)
        return cycles


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="[%(levelname)s] %(threadName)s: %(message)s",
    )
    quirks = Quirks(
        shift_vy=args.shift_vy,
        jump_vx=args.jump_vx,
        increment_i=args.increment_i,
        logic_reset_vf=args.logic_reset_vf,
    )
    # state shared between the threads
    display = Display()
    keypad = Keypad()
    try:
        chip = Chip8.from_file(args.rom, display=display, keypad=keypad, quirks=quirks, ips=args.ips)
    except RomLoadError as err:
        sys.exit(str(err))

    def interpreter():
        try:
            chip.run()
        except Chip8Error as err:
            log.error("The emulator crashed: %s", err)

    timers = threading.Thread(target=decrement_timers_routine, args=([chip.dt, chip.st],), name="timers", daemon=True)
    cpu = threading.Thread(target=interpreter, name="interpreter", daemon=True)
    # pygame initialization
    pygame.init()
    pygame.display.set_caption(os.path.basename(args.rom))
    screen = Screen(display, args.scale)
    keymap = default_keymap()
    clock = pygame.time.Clock()
    log.info("Starting emulation at %d instructions per second with %s", args.ips, quirks)
    timers.start()
    cpu.start()
    # render + input loop
    run = True
    while run:
        clock.tick(FRAMES_PER_SECOND)
        run = poll_input(keypad, keymap)
        display.fade(PIXEL_PRE_OFF if args.no_fade else FADE_STEP)
        screen.render()
        if not cpu.is_alive():
            pygame.quit()
            sys.exit(f"********** THE EMULATOR CRASHED WITH THE FOLLOWING STATE\n{chip}")
    pygame.quit()


if __name__ == "__main__":
    main()
