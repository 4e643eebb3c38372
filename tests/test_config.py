from nomi.config import Settings


class TestSettings:
    def test_functions_url_defaults_to_project(self):
        settings = Settings(supabase_url="https://demo.supabase.co/")
        assert settings.edge_functions_url == "https://demo.supabase.co/functions/v1"

    def test_functions_url_override(self):
        settings = Settings(functions_url="https://app.example.com/functions/v1/")
        assert settings.edge_functions_url == "https://app.example.com/functions/v1"

    def test_remote_names_from_yaml(self):
        settings = Settings()
        assert settings.tables["messages"] == "nomi_messages"
        assert settings.rpc_config["increment_usage"] == "increment_daily_usage"
        assert settings.edge_functions["chat"] == "nomi-chat"

    def test_chat_defaults(self):
        settings = Settings()
        assert settings.daily_message_limit == 40
        assert settings.message_page_size == 20
        assert settings.request_timeout == 30.0
