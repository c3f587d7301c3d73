from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_ENV: str = "dev"
    APP_SECRET: str
    DB_URL: str
    JWT_ISS: str = "tablepay"
    JWT_EXP_MIN: int = 12*60
    TZ: str = "UTC"
    LOG_LEVEL: str = "INFO"

    # where the guest browser lands after a provider return
    CLIENT_URL: str = "http://localhost:3000"
    DEFAULT_CURRENCY: str = "USD"

    # realtime fan-out
    REDIS_URL: str | None = None
    REALTIME_CHANNEL_PREFIX: str = "tablepay"
    STAFF_ROOM: str = "ManagerRoom"

    # outbound provider calls
    PROVIDER_TIMEOUT_S: float = 10.0
    PROVIDER_RETRIES: int = 2

    # card-network redirect gateway (return secret and IPN secret are distinct)
    CARD_REDIRECT_TMN_CODE: str = ""
    CARD_REDIRECT_SECRET: str = ""
    CARD_REDIRECT_IPN_SECRET: str = ""
    CARD_REDIRECT_URL: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    CARD_REDIRECT_RETURN_URL: str = "http://localhost:4000/payments/card-redirect/return"

    # hosted checkout (Stripe)
    HOSTED_CHECKOUT_API_KEY: str = ""
    HOSTED_CHECKOUT_WEBHOOK_SECRET: str = ""
    HOSTED_CHECKOUT_RETURN_URL: str = "http://localhost:4000/payments/hosted-checkout/return"

    # webhook-driven processor (YooKassa-style)
    WEBHOOK_PROCESSOR_API_URL: str = "https://api.yookassa.ru/v3"
    WEBHOOK_PROCESSOR_SHOP_ID: str = ""
    WEBHOOK_PROCESSOR_SECRET_KEY: str = ""
    WEBHOOK_PROCESSOR_WEBHOOK_SECRET: str = ""
    WEBHOOK_PROCESSOR_RETURN_URL: str = "http://localhost:4000/payments/webhook-processor/return"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
