import os
import sys
import unittest
import keyring
import yaml
sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from config import YamlConfig, load_settings
from settings_schema import validate_settings

class DummyKeyring(keyring.backend.KeyringBackend):
    priority = 1
    def __init__(self):
        self.store = {}
    def get_password(self, service, username):
        return self.store.get((service, username))
    def set_password(self, service, username, password):
        self.store[(service, username)] = password
    def delete_password(self, service, username):
        self.store.pop((service, username), None)

class SettingsEncryptionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.keyring = DummyKeyring()
        keyring.set_keyring(self.keyring)
        os.environ['ENCRYPT_SETTINGS'] = '1'
        self.path = 'enc_settings.yaml'
        if os.path.exists(self.path):
            os.remove(self.path)

    def tearDown(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)
        os.environ.pop('ENCRYPT_SETTINGS', None)

    def test_encrypt_and_load(self) -> None:
        cfg = YamlConfig(self.path)
        cfg.save({'api_token': 'secret', 'api_url': 'https://gym.example/api'})
        self.assertTrue(os.path.exists(self.path))
        with open(self.path, encoding='utf-8') as f:
            raw = yaml.safe_load(f)
        self.assertIs(raw['api_token'], True)
        self.assertEqual(self.keyring.store[('kraftlog', 'api_token')], 'secret')
        data = cfg.load()
        self.assertEqual(data['api_token'], 'secret')
        self.assertEqual(data['api_url'], 'https://gym.example/api')

    def test_missing_secret_is_dropped(self) -> None:
        with open(self.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump({'api_token': True, 'db_path': 'x.db'}, f)
        data = YamlConfig(self.path).load()
        self.assertNotIn('api_token', data)
        self.assertEqual(data['db_path'], 'x.db')

class SettingsLoadTest(unittest.TestCase):
    def setUp(self) -> None:
        self.path = 'sync_settings.yaml'
        os.environ.pop('ENCRYPT_SETTINGS', None)

    def tearDown(self) -> None:
        if os.path.exists(self.path):
            os.remove(self.path)
        os.environ.pop('KRAFTLOG_API_URL', None)

    def test_defaults_without_file(self) -> None:
        settings = load_settings('does_not_exist.yaml')
        self.assertEqual(settings.api_url, 'http://localhost:8080/api')
        self.assertEqual(settings.max_retries, 5)
        self.assertEqual(settings.storage, 'sqlite')

    def test_file_values_and_env_override(self) -> None:
        YamlConfig(self.path).save({'api_url': 'http://file', 'batch_size': 10, 'api_token': None})
        os.environ['KRAFTLOG_API_URL'] = 'http://env'
        settings = load_settings(self.path)
        self.assertEqual(settings.api_url, 'http://env')
        self.assertEqual(settings.batch_size, 10)
        self.assertIsNone(settings.api_token)

    def test_invalid_values_raise(self) -> None:
        with self.assertRaises(ValueError):
            validate_settings({'storage': 'indexeddb'})
        with self.assertRaises(ValueError):
            validate_settings({'batch_size': 0})

if __name__ == '__main__':
    unittest.main()
