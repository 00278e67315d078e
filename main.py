import asyncio

from dotenv import load_dotenv

from src.signal_hub.config import load_config
from src.signal_hub.hub import SignalHub
from src.signal_hub.logging_setup import configure_logging
from src.signal_hub import views


async def run_demo():
    """
    Bring the hub up once: register providers, sync the default plugins and
    print what a chat assistant would see.
    """
    config = load_config(use_dotenv=False)
    configure_logging(config.get("log_file"), config.get("log_level", "INFO"))
    hub = SignalHub(config)
    await hub.initialize()

    signals = hub.registry.signals
    print("--- Plugins ---")
    for state in hub.registry.get_states():
        print(f"{state.key}: enabled={state.enabled} connected={state.connected} last_error={state.last_error}")

    print("\n--- Latest signals ---")
    for signal in hub.registry.recent_signals(10):
        print(f"[{signal.source}] {signal.type.value} @ {signal.timestamp.isoformat()}")

    time_signal = views.latest_time(signals)
    if time_signal:
        print(f"\nIt is {time_signal.data['formatted_time']} ({time_signal.data['time_of_day']})")
    weather = views.latest_weather(signals)
    if weather:
        print(f"Weather: {weather.data['formatted']}")

    print("\n--- Agenda ---")
    print(views.format_agenda_for_context(signals))
    print("\n--- Wellness ---")
    print(views.format_wellness_for_context(signals))

    print("\n--- Available integrations ---")
    for integration in hub.available_integrations():
        print(f"{integration['icon']} {integration['name']} ({integration['auth_type']})")
    await hub.stop()


def main():
    # Load env from .env.local (preferred) and .env without relying on auto-discovery
    load_dotenv(".env.local", override=False)
    load_dotenv(".env", override=False)
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
