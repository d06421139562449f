#!/usr/bin/env python3
"""
Glimpse Debug Monitor
Joins the server's debug room and prints every session's stabilizer state.
Optionally sends a test image so there is something to watch.
"""

import argparse
import base64
import sys
import time
from pathlib import Path

import socketio
from colorama import Fore, Style, init

# Initialize colorama for cross-platform colored output
init(autoreset=True)

sio = socketio.Client()


def print_header(text):
    """Print a styled header."""
    print(f"\n{Fore.CYAN}{'=' * 70}")
    print(f"{Fore.CYAN}{text.center(70)}")
    print(f"{Fore.CYAN}{'=' * 70}{Style.RESET_ALL}\n")


def print_success(text):
    print(f"{Fore.GREEN}✓ {text}{Style.RESET_ALL}")


def print_error(text):
    print(f"{Fore.RED}✗ {text}{Style.RESET_ALL}")


def print_warning(text):
    print(f"{Fore.YELLOW}⚠  {text}{Style.RESET_ALL}")


def format_time_left(seconds) -> str:
    """120.0 -> 2:00"""
    seconds = max(0, int(seconds or 0))
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_debug_line(data: dict) -> str:
    """One line summary of a debug_state payload."""
    mode = (data.get('connection_mode') or 'rest').upper()
    current = data.get('current_context') or '-'
    background = data.get('background_context') or '-'
    confidence = data.get('confidence')
    confidence_text = f"{confidence * 100:.0f}%" if isinstance(confidence, (int, float)) else '-'
    lock = '🔒' if data.get('is_locked') else '🔓'

    parts = [
        f"[{data.get('sid', '?')[:6]}]",
        mode,
        f"ctx={current}",
        f"conf={confidence_text}",
        lock,
        f"bg={background}",
        f"tiles={data.get('tile_count', 0)}",
    ]
    if mode == 'LIVE':
        parts.append(f"left={format_time_left(data.get('session_time_remaining'))}")
    return " ".join(parts)


def load_and_encode_image(image_path: str) -> str:
    """Read an image file as a data URL."""
    with open(image_path, 'rb') as image_file:
        image_data = image_file.read()
    base64_string = base64.b64encode(image_data).decode('utf-8')
    print_success(f"Loaded image: {image_path} ({len(image_data) / 1024:.1f} KB)")
    return f"data:image/jpeg;base64,{base64_string}"


@sio.event
def connect():
    print_success("Connected to Glimpse server")
    sio.emit('join_debug')


@sio.event
def disconnect():
    print_warning("Disconnected from server")


@sio.event
def debug_state(data):
    color = Fore.MAGENTA if data.get('is_locked') else Fore.WHITE
    print(f"{color}{format_debug_line(data)}{Style.RESET_ALL}")


@sio.event
def aac_state(data):
    notification = data.get('notification')
    if notification:
        print(f"{Fore.CYAN}🔔 {notification.get('message')}{Style.RESET_ALL}")
    affirmation = data.get('affirmation')
    if affirmation and affirmation.get('ui'):
        print(f"{Fore.YELLOW}❓ {affirmation['ui'].get('prompt')}{Style.RESET_ALL}")


def main():
    parser = argparse.ArgumentParser(
        description='Debug monitor for the Glimpse AAC server',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python debug_monitor.py
  python debug_monitor.py --image kitchen.jpg
  python debug_monitor.py --server http://192.168.1.100:8000 --duration 120
        """
    )
    parser.add_argument(
        '--server',
        type=str,
        default='http://localhost:8000',
        help='Server URL (default: http://localhost:8000)'
    )
    parser.add_argument(
        '--image',
        type=str,
        default=None,
        help='Send this image as a video frame once connected'
    )
    parser.add_argument(
        '--duration',
        type=int,
        default=0,
        help='Seconds to watch before exiting (default: until Ctrl+C)'
    )

    args = parser.parse_args()

    if args.image and not Path(args.image).exists():
        print_error(f"Image file not found: {args.image}")
        sys.exit(1)

    print_header("GLIMPSE DEBUG MONITOR")

    try:
        sio.connect(args.server)
    except Exception as e:
        print_error(f"Failed to connect to server: {e}")
        print_warning("Make sure the server is running: python server.py")
        sys.exit(1)

    if args.image:
        sio.emit('video_frame', {'frame': load_and_encode_image(args.image)})
        print_success("Frame sent")

    start_time = time.time()
    try:
        while not args.duration or time.time() - start_time < args.duration:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        sio.disconnect()

    print_header("MONITOR STOPPED")


if __name__ == "__main__":
    main()
