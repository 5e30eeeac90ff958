# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COMPATIBILITY QUIRKS TABLE
# https://games.gulrak.net/cadmium/chip8-opcode-table.html#quirk6
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite


import argparse
import os
import sys

os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
    K_ESCAPE, K_F5,
)

from interpreter import Chip8, Chip8Error, CapacityError, SCREEN_WIDTH, SCREEN_HEIGHT


# ******************** STATIC SECTION
# COSMAC VIP keypad layout mapped onto the left side of a QWERTY keyboard
#   1 2 3 C        1 2 3 4
#   4 5 6 D   <-   Q W E R
#   7 8 9 E        A S D F
#   A 0 B F        Z X C V
KEY_MAPPINGS = {
    K_1: 0x1, K_2: 0x2, K_3: 0x3, K_4: 0xC,
    K_q: 0x4, K_w: 0x5, K_e: 0x6, K_r: 0xD,
    K_a: 0x7, K_s: 0x8, K_d: 0x9, K_f: 0xE,
    K_z: 0xA, K_x: 0x0, K_c: 0xB, K_v: 0xF,
}

DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
SCALE = 15
FPS = 60
TICKS_PER_FRAME = 10        # instructions executed between two timer ticks
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-s", "--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("-t", "--ticks-per-frame", type=int, default=TICKS_PER_FRAME,
                        help="instructions executed each frame")
    parser.add_argument("--fps", type=int, default=FPS, help="frames per second, also the timers frequency")
    return parser.parse_args(argv)

def read_rom(path):
    """read the whole ROM file, it is a raw dump of machine code with no header"""
    with open(path, mode='rb') as f:
        return f.read()

def load_rom(chip, rom, path):
    chip.load(rom)
    if DEBUG: print(f"The ROM at path {path} has been loaded successfully")

def trace(address, instruction):
    """print out the ASM of the instruction just executed"""
    if DEBUG: print(f"mem_addr: 0x{address:04x}    instruction: {instruction.mnemonic()}")


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def render(self, display):
        """paint a display snapshot, one scale x scale square per pixel that is ON"""
        self.surface.fill(self.background)
        for y, row in enumerate(display):
            for x, pixel in enumerate(row):
                if pixel:
                    pygame.draw.rect(
                        self.surface,
                        self.foreground,
                        (x * self.scale, y * self.scale, self.scale, self.scale)
                    )
        pygame.display.flip()


def handle_event(event, chip, rom, path):
    """forward one pygame event to the machine, return False when the user asked to quit"""
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == K_ESCAPE:
            return False
        elif event.key == K_F5:
            chip.reset()
            load_rom(chip, rom, path)
        elif event.key in KEY_MAPPINGS:
            chip.press_key(KEY_MAPPINGS[event.key])
    elif event.type == pygame.KEYUP and event.key in KEY_MAPPINGS:
        chip.unpress_key(KEY_MAPPINGS[event.key])
    return True


def run_frame(chip, ticks_per_frame):
    """execute a frame worth of instructions, then tick the timers once"""
    for _ in range(ticks_per_frame):
        address = chip.pc
        instruction = chip.step()
        trace(address, instruction)
    chip.tick_timers()


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    rom = read_rom(args.file)
    chip = Chip8()
    try:
        load_rom(chip, rom, args.file)
    except CapacityError as ce:
        sys.exit(f"Unable to load {args.file}: {ce}")
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(args.file))
    screen = Screen(s=args.scale)
    # emulation loop
    run = True
    try:
        while run:
            clock.tick(args.fps)
            # process user input
            for event in pygame.event.get():
                run = handle_event(event, chip, rom, args.file) and run
            if not run:
                break
            run_frame(chip, args.ticks_per_frame)
            if chip.needs_redraw():
                screen.render(chip.get_display())
                chip.was_redrawn()
    except (Chip8Error, IndexError) as err:
        pygame.quit()
        sys.exit(f"********** THE EMULATOR CRASHED: {err}\n{chip}")
    pygame.quit()


if __name__ == "__main__":
    main()
