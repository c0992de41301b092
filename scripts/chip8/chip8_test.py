import contextlib
import io
import os
import unittest

import pygame

from chip8 import BLACK, KEY_MAPPINGS, WHITE, Screen, get_args, hex_color, open_beeper, square_wave
from chip8_hw import Framebuffer


class TestArguments(unittest.TestCase):
    def test_defaults(self):
        cfg = get_args(["-f", "roms/pong.ch8"])
        self.assertEqual(cfg.file, "roms/pong.ch8")
        self.assertEqual((cfg.scale, cfg.ips), (20, 600))
        self.assertEqual((cfg.fg, cfg.bg), (WHITE, BLACK))
        self.assertEqual((cfg.freq, cfg.sample_rate, cfg.volume), (440, 44100, 3000))
        self.assertFalse(cfg.shift_quirk)
        self.assertTrue(cfg.key_release)
        self.assertIsNone(cfg.seed)

    def test_overrides(self):
        cfg = get_args(["--file", "a.ch8", "--scale", "10", "--ips", "1200", "--fg", "#50459b",
                        "--shift-quirk", "--no-key-release", "--seed", "7"])
        self.assertEqual((cfg.scale, cfg.ips), (10, 1200))
        self.assertEqual(cfg.fg, (0x50, 0x45, 0x9B))
        self.assertTrue(cfg.shift_quirk)
        self.assertFalse(cfg.key_release)
        self.assertEqual(cfg.seed, 7)

    def test_invalid_values(self):
        for argv in (["--scale", "10"], ["-f", "a", "--ips", "0"], ["-f", "a", "--bg", "blue"],
                     ["-f", "a", "--volume", "40000"]):
            with self.subTest(argv=argv):
                with contextlib.redirect_stderr(io.StringIO()), self.assertRaises(SystemExit):
                    get_args(argv)

    def test_hex_color(self):
        self.assertEqual(hex_color("FF8000"), (255, 128, 0))
        self.assertEqual(hex_color("0x000001"), (0, 0, 1))


class TestSquareWave(unittest.TestCase):
    def test_one_period(self):
        wave = square_wave(freq=440, sample_rate=44100, volume=3000)
        self.assertEqual(len(wave), 100)
        self.assertEqual(set(wave[:50]), {-3000})
        self.assertEqual(set(wave[50:]), {3000})
        self.assertEqual(wave.typecode, 'h')


class TestKeyMappings(unittest.TestCase):
    def test_every_key_is_mapped_once(self):
        self.assertEqual(sorted(KEY_MAPPINGS.values()), list(range(16)))


class HeadlessTestCase(unittest.TestCase):
    """pygame on the SDL dummy drivers, no window or sound card needed"""
    def setUp(self):
        os.environ["SDL_VIDEODRIVER"] = "dummy"
        os.environ["SDL_AUDIODRIVER"] = "dummy"
        pygame.init()

    def tearDown(self):
        pygame.quit()


class TestScreen(HeadlessTestCase):
    def test_render_only_when_dirty(self):
        screen = Screen(s=2, bg_color=BLACK, fg_color=(255, 0, 0))
        fb = Framebuffer()
        fb.draw_sprite(3, 1, [0x80])
        self.assertTrue(screen.render(fb))
        self.assertFalse(fb.dirty)
        self.assertEqual(tuple(screen.surface.get_at((6, 2)))[:3], (255, 0, 0))
        self.assertEqual(tuple(screen.surface.get_at((0, 0)))[:3], BLACK)
        self.assertFalse(screen.render(fb))

    def test_render_after_clear(self):
        screen = Screen(s=1)
        fb = Framebuffer()
        fb.draw_sprite(0, 0, [0xFF])
        screen.render(fb)
        fb.clear()
        self.assertTrue(screen.render(fb))
        self.assertEqual(tuple(screen.surface.get_at((0, 0)))[:3], BLACK)


class TestBeeper(HeadlessTestCase):
    def test_mixer_is_reopened_mono(self):
        beeper = open_beeper(get_args(["-f", "x.ch8", "--sample-rate", "22050"]))
        if beeper is None:
            self.skipTest("no audio driver available")
        self.assertEqual(pygame.mixer.get_init(), (22050, -16, 1))
        self.assertFalse(beeper.playing)


if __name__ == "__main__":
    unittest.main()
