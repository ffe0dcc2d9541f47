EUROPASS_PROVIDER_ID = "europass"
EUROPASS_HOMEPAGE = "https://europa.eu/europass/en/find-courses"

META_FILENAME = "europass_meta.json"
FILES_DIRNAME = "files"
COUNTRY_FILES_DIRNAME = "countryFiles"
META_DIRNAME = "meta"
LOGS_DIRNAME = "logs"
DEFAULT_DATA_DIRNAME = "qualificationData"
DEFAULT_ERRORS_DIRNAME = "errors"

SORT_TYPE = "publication date"

# Same headers the Europass course finder sends.
DEFAULT_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://europa.eu/",
    "Origin": "https://europa.eu",
}
