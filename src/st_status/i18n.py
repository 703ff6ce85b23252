"""
Internationalization (i18n) module for the status poller.

Provides English (en) and German (de) texts for alert message keys,
gateway error messages, self-test and CLI output.
"""

from typing import Optional


# Supported languages
SUPPORTED_LANGUAGES = frozenset({"en", "de"})
DEFAULT_LANGUAGE = "en"


# Structure: {message_key: {language_code: translated_message}}
TRANSLATIONS: dict[str, dict[str, str]] = {
    # Health alerts (messageKey values sent with the 'alert' event)
    "ALERT_AUTH": {
        "en": "SmartThings authorization failed. Re-run the OAuth setup.",
        "de": "SmartThings-Autorisierung fehlgeschlagen. OAuth-Einrichtung erneut ausführen.",
    },
    "ALERT_SCOPE": {
        "en": "The SmartThings token lacks permission for some devices.",
        "de": "Dem SmartThings-Token fehlen Berechtigungen für einige Geräte.",
    },
    "ALERT_NETWORK": {
        "en": "Unable to reach SmartThings.",
        "de": "SmartThings ist nicht erreichbar.",
    },
    "ALERT_RATE_LIMIT": {
        "en": "SmartThings is rate limiting requests.",
        "de": "SmartThings begrenzt die Anfragen.",
    },
    "ALERT_OUTAGE": {
        "en": "SmartThings is having server problems.",
        "de": "SmartThings hat Serverprobleme.",
    },
    "ALERT_SCHEMA": {
        "en": "SmartThings returned unexpected device data.",
        "de": "SmartThings hat unerwartete Gerätedaten geliefert.",
    },

    # Gateway error messages
    "gateway.no_devices": {
        "en": "No devices found matching configuration.",
        "de": "Keine Geräte passend zur Konfiguration gefunden.",
    },
    "gateway.no_credentials": {
        "en": "No SmartThings credentials found. Run the setup first.",
        "de": "Keine SmartThings-Zugangsdaten gefunden. Bitte zuerst die Einrichtung ausführen.",
    },
    "gateway.vault_key_error": {
        "en": "The credential key file is invalid. Restore it or re-run the setup.",
        "de": "Die Schlüsseldatei der Zugangsdaten ist ungültig. Wiederherstellen oder Einrichtung erneut ausführen.",
    },
    "gateway.auth_failed": {
        "en": "SmartThings authentication failed. Check your credentials.",
        "de": "SmartThings-Authentifizierung fehlgeschlagen. Zugangsdaten prüfen.",
    },
    "gateway.network_error": {
        "en": "Unable to reach SmartThings. Showing cached data.",
        "de": "SmartThings nicht erreichbar. Zwischengespeicherte Daten werden angezeigt.",
    },
    "gateway.cycle_error": {
        "en": "Error fetching data. Showing cached data.",
        "de": "Fehler beim Abrufen der Daten. Zwischengespeicherte Daten werden angezeigt.",
    },

    # Configuration
    "config.loaded": {
        "en": "Configuration loaded from {path}",
        "de": "Konfiguration aus {path} geladen",
    },
    "config.invalid": {
        "en": "Invalid configuration: {error}",
        "de": "Ungültige Konfiguration: {error}",
    },
    "config.valid": {
        "en": "Configuration is valid",
        "de": "Konfiguration ist gültig",
    },
    "config.created": {
        "en": "Example configuration written to {path}",
        "de": "Beispielkonfiguration nach {path} geschrieben",
    },
    "config.exists": {
        "en": "{path} already exists, not overwriting",
        "de": "{path} existiert bereits und wird nicht überschrieben",
    },
    "config.no_credentials_source": {
        "en": "Neither OAuth client credentials nor a token are configured",
        "de": "Weder OAuth-Client-Zugangsdaten noch ein Token sind konfiguriert",
    },
    "config.no_devices_or_rooms": {
        "en": "Neither devices nor rooms are configured; nothing will be polled",
        "de": "Weder Geräte noch Räume sind konfiguriert; es wird nichts abgefragt",
    },
    "config.poll_interval_clamped": {
        "en": "pollInterval {configured} ms is below the minimum; {effective} ms is used",
        "de": "pollInterval {configured} ms liegt unter dem Minimum; {effective} ms wird verwendet",
    },
    "config.rooms_ignored": {
        "en": "Explicit devices are configured; rooms are ignored",
        "de": "Explizite Geräte sind konfiguriert; Räume werden ignoriert",
    },

    # OAuth helpers
    "auth.open_url": {
        "en": "Open this URL in your browser to authorize:",
        "de": "Diese URL im Browser öffnen, um zu autorisieren:",
    },
    "auth.no_client_credentials": {
        "en": "clientId and clientSecret are required",
        "de": "clientId und clientSecret sind erforderlich",
    },
    "auth.no_code": {
        "en": "No authorization code found in the input",
        "de": "Kein Autorisierungscode in der Eingabe gefunden",
    },
    "auth.exchange_success": {
        "en": "Tokens saved. Access token valid until {expires_at}",
        "de": "Tokens gespeichert. Zugriffstoken gültig bis {expires_at}",
    },
    "auth.exchange_failed": {
        "en": "Token exchange failed: {error}",
        "de": "Token-Austausch fehlgeschlagen: {error}",
    },

    # Self-test
    "selftest.header": {
        "en": "Self-Test Results",
        "de": "Selbsttest-Ergebnisse",
    },
    "selftest.config_validation": {
        "en": "Configuration:",
        "de": "Konfiguration:",
    },
    "selftest.config_valid": {
        "en": "valid",
        "de": "gültig",
    },
    "selftest.config_invalid": {
        "en": "invalid",
        "de": "ungültig",
    },
    "selftest.warnings": {
        "en": "Warnings:",
        "de": "Warnungen:",
    },
    "selftest.credentials": {
        "en": "Credentials:",
        "de": "Zugangsdaten:",
    },
    "selftest.connectivity": {
        "en": "API reachability:",
        "de": "API-Erreichbarkeit:",
    },
    "selftest.ok": {
        "en": "OK",
        "de": "OK",
    },
    "selftest.failed": {
        "en": "FAILED",
        "de": "FEHLGESCHLAGEN",
    },
    "selftest.skipped": {
        "en": "skipped",
        "de": "übersprungen",
    },
    "selftest.success": {
        "en": "Self-test passed",
        "de": "Selbsttest bestanden",
    },
    "selftest.failure": {
        "en": "Self-test failed",
        "de": "Selbsttest fehlgeschlagen",
    },
    "selftest.duration": {
        "en": "Duration: {duration_ms} ms",
        "de": "Dauer: {duration_ms} ms",
    },

    # CLI
    "cli.starting": {
        "en": "Starting status poller (interval {interval_s} s)",
        "de": "Status-Poller wird gestartet (Intervall {interval_s} s)",
    },
    "cli.stopped": {
        "en": "Status poller stopped",
        "de": "Status-Poller gestoppt",
    },
    "cli.test_mode": {
        "en": "Test mode: publishing mock devices",
        "de": "Testmodus: Beispielgeräte werden veröffentlicht",
    },
    "cli.version": {
        "en": "Version: {version}",
        "de": "Version: {version}",
    },
}


def get_message(
    key: str,
    language: Optional[str] = None,
    **kwargs,
) -> str:
    """
    Get a translated message by key.

    Args:
        key: The message key (e.g., 'gateway.no_devices' or 'ALERT_AUTH')
        language: Language code ('en' or 'de'). Defaults to DEFAULT_LANGUAGE.
        **kwargs: Format arguments for the message template

    Returns:
        The translated and formatted message string.
        If the key is not found, returns the key itself.
        If the language is not found, falls back to DEFAULT_LANGUAGE.

    Examples:
        >>> get_message('ALERT_NETWORK', 'en')
        'Unable to reach SmartThings.'
        >>> get_message('config.loaded', 'de', path='config.json')
        'Konfiguration aus config.json geladen'
    """
    if language is None or language not in SUPPORTED_LANGUAGES:
        language = DEFAULT_LANGUAGE

    translations = TRANSLATIONS.get(key)
    if translations is None:
        return key

    message = translations.get(language)
    if message is None:
        message = translations.get(DEFAULT_LANGUAGE)
    if message is None:
        return key

    if kwargs:
        try:
            message = message.format(**kwargs)
        except KeyError:
            # Leave the template unformatted
            pass

    return message


def get_all_message_keys() -> set[str]:
    """Get all available message keys."""
    return set(TRANSLATIONS.keys())


def has_translation(key: str, language: str) -> bool:
    translations = TRANSLATIONS.get(key)
    if translations is None:
        return False
    return language in translations


def get_missing_translations(language: str) -> set[str]:
    """
    Get all message keys that are missing translations for a language.

    Args:
        language: The language code to check

    Returns:
        Set of message keys missing translations for the specified language.
    """
    return {key for key, translations in TRANSLATIONS.items() if language not in translations}


def validate_translations() -> dict[str, set[str]]:
    """
    Validate that all languages have all translations.

    Returns:
        Dictionary mapping language codes to sets of missing message keys.
        Empty sets indicate complete translations.
    """
    return {language: get_missing_translations(language) for language in SUPPORTED_LANGUAGES}
