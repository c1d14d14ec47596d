from errors import AuthError, MalformedTimestampError, UpstreamPayloadError, UpstreamStatusError
from reconcile import GROSS_FIELD, NETTED_FIELD
from timestamps import to_local_iso

ELENIA_BASE_URL = "https://public.sgp-prod.aws.elenia.fi/api/gen"
COGNITO_URL = "https://cognito-idp.eu-west-1.amazonaws.com/"
COGNITO_CLIENT_ID = "k4s2pnm04536t1bm72bdatqct"
CONSUMPTION_METERINGPOINT_TYPE = "kulutus"
AUTH_FAILURE_MARKERS = ("NotAuthorizedException", "UserNotFoundException", "PasswordResetRequiredException")

DEFAULT_HEADERS = {
    "Accept": "*/*",
    "Accept-Language": "en-US,en;q=0.5",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36",
    "Referer": "https://ainalab.aws.elenia.fi/",
    "Origin": "https://ainalab.aws.elenia.fi",
}


def _json(response, what):
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamPayloadError(f"{what} response is not JSON") from exc


class EleniaService:
    def __init__(self, fetch_client, tzinfo, logger, base_url=ELENIA_BASE_URL, cognito_url=COGNITO_URL):
        self.fetch_client = fetch_client
        self.tzinfo = tzinfo
        self.logger = logger
        self.base_url = base_url
        self.cognito_url = cognito_url

    def get_cognito_token(self, credential):
        payload = {
            "AuthFlow": "USER_PASSWORD_AUTH",
            "ClientId": COGNITO_CLIENT_ID,
            "AuthParameters": {"USERNAME": credential.username, "PASSWORD": credential.secret},
            "ClientMetadata": {},
        }
        headers = {
            "Content-Type": "application/x-amz-json-1.1",
            "X-Amz-Target": "AWSCognitoIdentityProviderService.InitiateAuth",
        }
        self.logger.info("Requesting Cognito token for %s", credential.username)
        try:
            response = self.fetch_client.post(self.cognito_url, headers=headers, json=payload)
        except UpstreamStatusError as exc:
            # Cognito reports bad credentials as a 400 with a typed error body.
            if exc.status_code == 400 and any(marker in (exc.body or "") for marker in AUTH_FAILURE_MARKERS):
                raise AuthError("Elenia rejected the username or password", status_code=400) from exc
            raise
        data = _json(response, "Cognito")
        try:
            return data["AuthenticationResult"]["AccessToken"]
        except (KeyError, TypeError) as exc:
            raise AuthError("Cognito response did not contain an access token") from exc

    def get_customer_data(self, bearer_token):
        response = self.fetch_client.get(
            f"{self.base_url}/customer_data_and_token",
            headers={**DEFAULT_HEADERS, "Authorization": f"Bearer {bearer_token}"},
        )
        data = _json(response, "Customer data")
        try:
            api_token = data["token"]
            customer_datas = data["customer_datas"]
            customer_id = next(iter(customer_datas))
            meteringpoints = customer_datas[customer_id].get("meteringpoints") or []
        except (KeyError, TypeError, AttributeError, StopIteration) as exc:
            raise UpstreamPayloadError("Customer data response has an unexpected shape") from exc

        consumption_gsrn = None
        for meteringpoint in meteringpoints:
            if isinstance(meteringpoint, dict) and meteringpoint.get("type") == CONSUMPTION_METERINGPOINT_TYPE:
                consumption_gsrn = meteringpoint.get("gsrn")
        return {"api_token": api_token, "customer_id": customer_id, "consumption_gsrn": consumption_gsrn}

    def _localize(self, readings):
        localized = []
        for reading in readings or []:
            if not isinstance(reading, dict):
                localized.append(reading)
                continue
            try:
                localized.append({**reading, "t": to_local_iso(reading.get("t"), self.tzinfo)})
            except MalformedTimestampError:
                # Left as-is; the reconciler counts and skips it.
                localized.append(reading)
        return localized

    def parse_months(self, payload):
        if not isinstance(payload, dict) or not isinstance(payload.get("months"), list):
            raise UpstreamPayloadError("Meter reading response has no months array")
        groups = []
        for month in payload["months"]:
            if not isinstance(month, dict):
                self.logger.warning("Skipping malformed month entry: %r", month)
                continue
            group = {"month": month.get("month")}
            for name in (NETTED_FIELD, GROSS_FIELD):
                if isinstance(month.get(name), list):
                    group[name] = self._localize(month[name])
            groups.append(group)
        return groups

    def get_meter_readings(self, api_token, gsrn, customer_id, year):
        self.logger.info("Requesting consumption readings for %s (year %s)", gsrn, year)
        response = self.fetch_client.get(
            f"{self.base_url}/meter_reading_yh",
            params={"gsrn": gsrn, "customer_ids": customer_id, "year": str(year)},
            headers={**DEFAULT_HEADERS, "Authorization": f"Bearer {api_token}"},
        )
        return self.parse_months(_json(response, "Meter reading"))

    def fetch_consumption_readings(self, year, credential):
        if credential is None:
            raise AuthError("No Elenia credentials configured")
        bearer_token = self.get_cognito_token(credential)
        customer = self.get_customer_data(bearer_token)
        if not customer["consumption_gsrn"]:
            self.logger.warning("No consumption metering point found for customer %s", customer["customer_id"])
            return []
        groups = self.get_meter_readings(customer["api_token"], customer["consumption_gsrn"], customer["customer_id"], year)
        self.logger.info("Received %s month groups from Elenia for %s", len(groups), year)
        return groups

    def check_credentials(self, credential):
        try:
            customer = self.get_customer_data(self.get_cognito_token(credential))
        except AuthError as exc:
            self.logger.warning("Elenia credential check failed: %s", exc)
            return False
        return bool(customer["api_token"] and customer["customer_id"])
