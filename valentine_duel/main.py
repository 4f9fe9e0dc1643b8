import argparse
import asyncio
import logging

from valentine_duel.config import Settings
from valentine_duel.core.rtc_peer import TERMINAL_STATES, NegotiationState
from valentine_duel.errors import BrokerUnavailable, InvalidDescriptor, PeerSessionError
from valentine_duel.session import GameHandle, GameSession


async def ainput(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


async def paste_until_valid(prompt: str, apply, finished=None):
    while True:
        text = await ainput(prompt)
        try:
            return await apply(text)
        except InvalidDescriptor as e:
            if finished and finished():
                raise
            print(f"⚠️ {e}")


async def wait_until_open(handle: GameHandle) -> bool:
    async for state in handle.statuses:
        print(f"… {state.value}")
        if state == NegotiationState.OPEN:
            return True
    return False


async def play(session: GameSession, handle: GameHandle):
    if not await wait_until_open(handle):
        print("❌ Could not connect. Start again from the menu.")
        return

    changed = asyncio.Event()
    session.on_message = lambda message: changed.set()
    session.on_state_change = lambda state: changed.set()

    while not session.transport_closed:
        print()
        print(session.board.render())
        if session.winner:
            print("It's a draw! 🤝" if session.winner == "draw" else f"{session.winner} wins! 🎉")
            choice = (await ainput("[r]estart or [q]uit: ")).strip().lower()
            if choice == "r":
                session.send_restart()
                continue
            return
        if not session.is_my_turn:
            opponent = session.opponent.name if session.opponent else "your opponent"
            print(f"Waiting for {opponent}…")
            changed.clear()
            await changed.wait()
            continue
        raw = (await ainput(f"Your move ({session.symbol}), 0-8, m to toggle mute, q to quit: ")).strip().lower()
        if raw == "q":
            return
        if raw == "m":
            print("🔇 muted" if session.set_muted(not (session.voice and session.voice.muted)) else "🔊 unmuted")
            continue
        try:
            session.send_move(int(raw))
        except ValueError as e:
            print(f"⚠️ {e}")
    print("🔌 Your opponent left the game.")


async def run_host(session: GameSession, args):
    handle = await session.create_game(args.name, manual=args.manual)
    print(f"🎮 Game code: {handle.game_code}")
    if handle.exchange_text:
        print("=== HOST OFFER (Copy this and send to your friend) ===")
        print(handle.exchange_text)
        print("=== END OFFER ===")
        await paste_until_valid(
            "Paste the ANSWER from your friend: ",
            session.accept_answer,
            finished=lambda: session.state in TERMINAL_STATES,
        )
    await play(session, handle)


async def run_join(session: GameSession, args):
    code = args.code or await ainput("Game code: ")
    offer_text = await ainput("Paste the OFFER from your friend: ") if args.manual else None
    try:
        handle = await session.join_game(code, args.name, offer_text)
    except BrokerUnavailable as e:
        print(f"⚠️ {e}")
        handle = await paste_until_valid(
            "Paste the OFFER from your friend: ",
            lambda text: session.join_game(code, args.name, text),
        )
    if handle.exchange_text:
        print("=== GUEST ANSWER (Copy this and send back to the host) ===")
        print(handle.exchange_text)
        print("=== END ANSWER ===")
    await play(session, handle)


async def run(args):
    settings = Settings.from_env(broker_url=args.server, voice_enabled=False if args.no_voice else None)
    session = GameSession(settings)
    session.on_player_connect = lambda info: print(f"💞 {info.name} joined as {info.symbol}")
    session.on_error = lambda error: print(f"⚠️ {error}")
    try:
        if args.command == "host":
            await run_host(session, args)
        else:
            await run_join(session, args)
    except PeerSessionError as e:
        print(f"❌ {e}")
    finally:
        await session.leave()


def main():
    parser = argparse.ArgumentParser(description="Peer-to-peer tic-tac-toe with voice")
    parser.add_argument("command", choices=["host", "join"])
    parser.add_argument("--name", required=True, help="Your display name")
    parser.add_argument("--code", default=None, help="Game code to join")
    parser.add_argument("--server", default=None, help="Rendezvous websocket URL")
    parser.add_argument("--manual", action="store_true", help="Exchange connection data by copy/paste")
    parser.add_argument("--no-voice", action="store_true", help="Do not start a voice call")
    args = parser.parse_args()

    logging.basicConfig(level=Settings.from_env().log_level, format="%(asctime)s %(levelname)s %(message)s")

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nLeaving the game.")


if __name__ == "__main__":
    main()
