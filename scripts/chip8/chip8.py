# CHIP-8 INTERPRETER
# pygame front end: window, keyboard, beeper and the 60Hz frame loop around the CPU in chip8_cpu.py
#
# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908


import argparse
import logging
import random
import sys
from array import array
from collections import namedtuple

import os
os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_1, K_2, K_3, K_4,
    K_q, K_w, K_e, K_r,
    K_a, K_s, K_d, K_f,
    K_z, K_x, K_c, K_v,
    K_ESCAPE, K_SPACE,
)

from chip8_cpu import DEFAULT_IPS, TICK_RATE, Chip8, Quirks, State, cycles_per_frame
from chip8_hw import SCREEN_HEIGHT, SCREEN_WIDTH, MachineFault, RomLoadError


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
# the 4x4 hex keypad sits on the left side of a QWERTY keyboard
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
SCALE = 20
WHITE = (255, 255, 255)
BLACK = (0, 0, 0)
SQUARE_WAVE_FREQ = 440
AUDIO_SAMPLE_RATE = 44100
VOLUME = 3000

Config = namedtuple("Config", "file scale ips fg bg freq sample_rate volume shift_quirk key_release seed debug")


# ******************** UTILITIES SECTION
def hex_color(value):
    """parse RRGGBB (optionally prefixed by # or 0x) into an (r, g, b) tuple"""
    digits = value.lower().removeprefix("#").removeprefix("0x")
    if len(digits) != 6:
        raise argparse.ArgumentTypeError(f"{value!r} is not a RRGGBB color")
    try:
        rgb = int(digits, 16)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a RRGGBB color") from None
    return (rgb >> 16) & 0xFF, (rgb >> 8) & 0xFF, rgb & 0xFF

def positive_int(value):
    n = int(value)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return n

def get_args(argv=None):
    parser = argparse.ArgumentParser(description="CHIP-8 interpreter")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("--scale", type=positive_int, default=SCALE, help="size in pixels of one CHIP-8 pixel")
    parser.add_argument("--ips", type=positive_int, default=DEFAULT_IPS, help="instructions per second")
    parser.add_argument("--fg", type=hex_color, default=WHITE, help="foreground color as RRGGBB")
    parser.add_argument("--bg", type=hex_color, default=BLACK, help="background color as RRGGBB")
    parser.add_argument("--freq", type=positive_int, default=SQUARE_WAVE_FREQ, help="beep frequency in Hz")
    parser.add_argument("--sample-rate", type=positive_int, default=AUDIO_SAMPLE_RATE, help="audio sample rate in Hz")
    parser.add_argument("--volume", type=int, default=VOLUME, help="beep amplitude (0-32767)")
    parser.add_argument("--shift-quirk", action="store_true", help="8xy6/8xyE shift Vx by the value of Vy")
    parser.add_argument("--no-key-release", dest="key_release", action="store_false",
                        help="Fx0A completes on key press instead of key release")
    parser.add_argument("--seed", type=int, default=None, help="seed of the random number generator")
    parser.add_argument("--debug", action="store_true", default=DEBUG, help="log every executed instruction")
    args = parser.parse_args(argv)
    if not 0 <= args.volume <= 0x7FFF:
        parser.error(f"volume {args.volume} is out of the 0-32767 range")
    return Config(
        args.file, args.scale, args.ips, args.fg, args.bg, args.freq, args.sample_rate,
        args.volume, args.shift_quirk, args.key_release, args.seed, args.debug,
    )

def square_wave(freq=SQUARE_WAVE_FREQ, sample_rate=AUDIO_SAMPLE_RATE, volume=VOLUME):
    """one period of a signed 16 bit square wave, low half first"""
    period = max(2, sample_rate // freq)
    half_period = period // 2
    return array('h', [volume if (i // half_period) % 2 else -volume for i in range(period)])


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLACK, fg_color=WHITE):
        self.w, self.h, self.scale = w, h, s
        self.background = pygame.Color(*bg_color)
        self.foreground = pygame.Color(*fg_color)
        self.surface = pygame.display.set_mode(
            (w * self.scale, h * self.scale),
        )
        self.surface.fill(self.background)

    def write_pixel(self, x, y, color):
        """paint one scaled CHIP-8 pixel, visible after the next refresh"""
        pygame.draw.rect(
            self.surface,
            self.background if color==0 else self.foreground,
            (x * self.scale, y * self.scale, self.scale, self.scale)
        )

    @staticmethod
    def refresh():
        pygame.display.flip()

    def render(self, framebuffer):
        """draw the CHIP-8 framebuffer if it changed since the last call, then clear its dirty flag"""
        if not framebuffer.dirty:
            return False
        self.surface.fill(self.background)
        for y, row in enumerate(framebuffer.rows()):
            for x, pixel in enumerate(row):
                if pixel:
                    self.write_pixel(x, y, 1)
        framebuffer.dirty = False
        self.refresh()
        return True

class Beeper:
    """loops a square wave while the sound timer is active"""
    def __init__(self, freq=SQUARE_WAVE_FREQ, sample_rate=AUDIO_SAMPLE_RATE, volume=VOLUME):
        self.sound = pygame.mixer.Sound(buffer=square_wave(freq, sample_rate, volume))
        self.playing = False

    def update(self, active):
        if active and not self.playing:
            self.sound.play(loops=-1)
            self.playing = True
        elif not active and self.playing:
            self.sound.stop()
            self.playing = False

def open_beeper(cfg):
    """initialize the mixer for mono 16 bit audio, return None when no audio device is available"""
    try:
        if pygame.mixer.get_init() != (cfg.sample_rate, -16, 1):
            pygame.mixer.quit()     # pygame.init() may have opened it with the default stereo format
            pygame.mixer.init(frequency=cfg.sample_rate, size=-16, channels=1)
        return Beeper(cfg.freq, cfg.sample_rate, cfg.volume)
    except pygame.error as err:
        log.warning("Could not open an audio device, running without sound: %s", err)
        return None

def handle_events(chip):
    """process user input looping through the event queue"""
    for event in pygame.event.get():
        if event.type == pygame.QUIT:
            chip.quit()
        elif event.type == pygame.KEYDOWN:
            if event.key == K_ESCAPE:
                chip.quit()
            elif event.key == K_SPACE:
                chip.toggle_pause()
            elif event.key in KEY_MAPPINGS:
                chip.keypad.press(KEY_MAPPINGS[event.key])
        elif event.type == pygame.KEYUP:
            if event.key in KEY_MAPPINGS:
                chip.keypad.release(KEY_MAPPINGS[event.key])


# ******************** ENTRY POINT SECTION
def main(argv=None):
    cfg = get_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if cfg.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # CPU
    chip = Chip8(quirks=Quirks(cfg.shift_quirk, cfg.key_release), rng=random.Random(cfg.seed))
    try:
        chip.load_rom(cfg.file)
    except RomLoadError as err:
        sys.exit(f"Could not start the emulator: {err}")
    # pygame initialization, the mixer must be mono to play the square wave buffer
    pygame.mixer.pre_init(frequency=cfg.sample_rate, size=-16, channels=1)
    pygame.init()
    pygame.display.set_caption(os.path.basename(cfg.file))
    clock = pygame.time.Clock()
    # IO
    screen = Screen(s=cfg.scale, bg_color=cfg.bg, fg_color=cfg.fg)
    beeper = open_beeper(cfg)
    cycles = cycles_per_frame(cfg.ips, TICK_RATE)
    # emulation loop
    try:
        while chip.state is not State.HALTED:
            clock.tick(TICK_RATE)
            handle_events(chip)
            chip.run_frame(cycles)      # no-op while paused
            screen.render(chip.screen)
            if beeper:
                beeper.update(chip.running and chip.audio_active)
    except MachineFault as fault:
        sys.exit(f"********** THE EMULATOR CRASHED ({fault}) WITH THE FOLLOWING STATE\n{chip}")
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
