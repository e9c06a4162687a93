from django.test import TestCase
from django.urls import reverse


class CoreViewTests(TestCase):
    def test_health(self):
        response = self.client.get(reverse('health'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})

    def test_home_lists_routes(self):
        response = self.client.get(reverse('home'))

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, '/api/onramp/orders')
